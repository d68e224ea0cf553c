"""
Integration tests for candlesync.

These run the barrier, state machine and execution coordinator together
against the in-memory Redis double and the paper exchange.
"""
