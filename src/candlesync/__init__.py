"""
candlesync - reconciles per-candle indicator alerts and manages one trade per instrument.
"""

__version__ = "0.1.0"
