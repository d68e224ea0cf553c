"""
candlesync - per-candle trade manager

Entry points for running one decision cycle from an inbound indicator alert.

``handle_alert`` is what a webhook handler calls for every alert; the
``candlesync-cycle`` console script runs the same path for one alert read from
a file or stdin and prints the cycle result as JSON.

Alerts may use snake_case snapshot field names or the upper-case keys the
charting alerts were originally configured with::

    {"PAIR": "BTCUSD", "C1_LONG_VALUE": 2, "C1_SHORT_VALUE": 1,
     "C1_TIMESTAMP": "2024-03-01T12:15:00Z"}
"""

import argparse
import asyncio
import sys
from typing import Any, Mapping, NoReturn, Optional

import orjson

from candlesync.config import Settings, get_settings
from candlesync.data.snapshot import PartialUpdate, SnapshotField, TEXT_FIELDS
from candlesync.data.store import SnapshotStore
from candlesync.trading.cycle import CycleResult, create_decision_cycle
from candlesync.trading.errors import CandlesyncError
from candlesync.utils import LogConfig, get_logger, setup_logging

ALERT_KEYS: dict[str, SnapshotField] = {
    "C1_LONG_VALUE": SnapshotField.TREND_LONG,
    "C1_SHORT_VALUE": SnapshotField.TREND_SHORT,
    "C1_TIMESTAMP": SnapshotField.TREND_TIMESTAMP,
    "BASELINE_VALUE": SnapshotField.BASELINE,
    "CANDLE_CLOSE": SnapshotField.CLOSE,
    "CANDLE_HIGH": SnapshotField.HIGH,
    "CANDLE_LOW": SnapshotField.LOW,
    "BASELINE_TIMESTAMP": SnapshotField.BASELINE_TIMESTAMP,
    "ATR_VALUE": SnapshotField.ATR,
    "ATR_TIMESTAMP": SnapshotField.ATR_TIMESTAMP,
    "VOL_LONG_VALUE": SnapshotField.VOLUME_LONG,
    "VOL_SHORT_VALUE": SnapshotField.VOLUME_SHORT,
    "VOL_TIMESTAMP": SnapshotField.VOLUME_TIMESTAMP,
}

SYMBOL_KEYS = ("symbol", "PAIR", "pair")


def parse_alert(payload: Mapping[str, Any] | str | bytes) -> PartialUpdate:
    """
    Convert an inbound alert into a typed partial update.

    Accepts a mapping, a JSON document, or a webhook envelope whose ``body``
    holds either of those.

    Args:
        payload: Alert payload

    Returns:
        PartialUpdate for the alert's symbol

    Raises:
        ValueError: If the payload is not JSON, has no symbol, or carries an
            unknown or bookkeeping field
    """
    if isinstance(payload, (str, bytes)):
        payload = orjson.loads(payload)
    if not isinstance(payload, Mapping):
        raise ValueError("Alert payload must be a JSON object")
    if "body" in payload:
        return parse_alert(payload["body"])

    symbol = next((str(payload[key]) for key in SYMBOL_KEYS if payload.get(key)), None)
    if symbol is None:
        raise ValueError("Alert carries no symbol")

    fields: dict[SnapshotField, float | str] = {}
    for key, value in payload.items():
        if key in SYMBOL_KEYS:
            continue
        snapshot_field = ALERT_KEYS.get(key)
        if snapshot_field is None:
            try:
                snapshot_field = SnapshotField(key.lower())
            except ValueError as e:
                raise ValueError(f"Unknown alert field: {key}") from e
        if snapshot_field in TEXT_FIELDS:
            fields[snapshot_field] = str(value)
        else:
            fields[snapshot_field] = float(value)

    return PartialUpdate(symbol=symbol.upper(), fields=fields)


async def handle_alert(
    payload: Mapping[str, Any] | str | bytes,
    settings: Optional[Settings] = None,
    store: Optional[SnapshotStore] = None,
) -> CycleResult:
    """
    Run one decision cycle for an inbound alert.

    Args:
        payload: Alert payload (see ``parse_alert``)
        settings: Application settings (default: ``get_settings()``)
        store: Connected snapshot store; one is opened from settings if omitted

    Returns:
        CycleResult of the cycle

    Raises:
        ValueError: If the alert cannot be parsed
        CandlesyncError: If the cycle fails
    """
    settings = settings or get_settings()
    update = parse_alert(payload)

    if store is not None:
        return await create_decision_cycle(settings, store).run(update)

    async with SnapshotStore.from_settings(settings.redis) as owned_store:
        return await create_decision_cycle(settings, owned_store).run(update)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="candlesync-cycle",
        description="Run one decision cycle for an indicator alert.",
    )
    parser.add_argument(
        "alert",
        nargs="?",
        default="-",
        help="Path to a JSON alert, or - to read from stdin (default)",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser


def _read_alert(source: str) -> bytes:
    if source == "-":
        return sys.stdin.buffer.read()
    with open(source, "rb") as handle:
        return handle.read()


async def async_main(argv: Optional[list[str]] = None) -> int:
    """
    Async main function.

    Returns:
        Exit code (0 for success, 1 for any failure).
    """
    args = build_parser().parse_args(argv)
    settings = get_settings()

    if settings.trading.paper_trading:
        environment = "paper"
    elif settings.exchange.testnet:
        environment = "testnet"
    else:
        environment = "mainnet"

    # stdout carries the JSON result
    setup_logging(
        LogConfig(
            level=args.log_level or settings.logging.level,
            format=settings.logging.format,
            file_path=settings.logging.file_path,
            console_output=False,
            environment=environment,
        )
    )
    logger = get_logger(__name__)

    try:
        raw = _read_alert(args.alert)
        result = await handle_alert(raw, settings)
    except (OSError, ValueError) as e:
        logger.error("alert_invalid", source=args.alert, error=str(e))
        return 1
    except CandlesyncError as e:
        logger.error("cycle_failed", error_type=type(e).__name__, error=str(e))
        return 1

    sys.stdout.write(orjson.dumps(result.to_dict(), option=orjson.OPT_INDENT_2).decode())
    sys.stdout.write("\n")
    return 0


def main() -> NoReturn:
    """
    Main entry point.

    This function is called by the ``candlesync-cycle`` console script.
    """
    exit_code = asyncio.run(async_main())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
