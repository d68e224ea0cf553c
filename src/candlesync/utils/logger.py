"""
Structured logging for candlesync.

Every component logs through structlog with an event name plus key/value
fields, so one decision cycle can be followed across the barrier, the state
machine and the execution coordinator by filtering on ``symbol`` and
``minute``.

Example Usage:
    ```python
    from candlesync.utils.logger import setup_logging, get_logger, add_context, LogConfig

    setup_logging(LogConfig(level="INFO", format="json"))
    logger = get_logger(__name__)

    logger.info("barrier_open", symbol="BTCUSD", minute="15")

    with add_context(symbol="BTCUSD", minute="15"):
        logger.info("entry_submitted", side="Buy", qty=12)
    ```
"""

from contextlib import contextmanager
from dataclasses import dataclass
import logging
from pathlib import Path
import sys
from typing import Any, Iterator, Literal

import structlog
from structlog.types import EventDict, Processor

SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "api_secret",
        "apisecret",
        "secret",
        "sign",
        "signature",
        "password",
        "token",
        "private_key",
    }
)

# Handlers owned by setup_logging; replaced on every call.
_installed_handlers: list[logging.Handler] = []


@dataclass
class LogConfig:
    """Configuration for the logging system.

    Attributes:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Output format - "json" for production, "pretty" for development
        file_path: Optional path to log file. If None, only logs to console
        include_timestamp: Whether to include timestamps in logs
        include_caller_info: Whether to include caller file/line information
        console_output: Log to stdout (True) or to stderr (False)
        max_string_length: Maximum length for string values before truncation
        environment: Environment name (testnet, mainnet, paper)
        app_version: Application version string
    """

    level: str = "INFO"
    format: Literal["json", "pretty"] = "pretty"
    file_path: str | None = None
    include_timestamp: bool = True
    include_caller_info: bool = False
    console_output: bool = True
    max_string_length: int = 1000
    environment: str = "paper"
    app_version: str = "0.1.0"


def add_app_info(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every entry with the application name, environment and version."""
    event_dict["app"] = "candlesync"
    event_dict["environment"] = getattr(add_app_info, "environment", "unknown")
    event_dict["version"] = getattr(add_app_info, "version", "unknown")
    return event_dict


def _mask(value: Any) -> Any:
    if isinstance(value, str) and len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _mask_recursive(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            key: _mask(value) if str(key).lower() in SENSITIVE_KEYS else _mask_recursive(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(_mask_recursive(item) for item in data)
    return data


def filter_sensitive(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask API keys, secrets and request signatures, including nested request params."""
    return _mask_recursive(event_dict)


def truncate_strings(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Truncate long string values (raw exchange responses) to keep entries readable."""
    max_length = getattr(truncate_strings, "max_length", 1000)
    for key, value in event_dict.items():
        if isinstance(value, str) and len(value) > max_length:
            event_dict[key] = f"{value[:max_length]}... [truncated]"
    return event_dict


def _build_processors(config: LogConfig, renderer: Processor) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_info,
        filter_sensitive,
        truncate_strings,
    ]
    if config.include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    if config.include_caller_info:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                [
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.LINENO,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                ]
            )
        )
    processors.append(structlog.processors.StackInfoRenderer())
    processors.append(structlog.processors.format_exc_info)
    processors.append(renderer)
    return processors


def setup_logging(config: LogConfig) -> None:
    """Setup the logging system with the given configuration.

    Initializes structlog on top of the standard library logging module. The
    optional log file receives the same rendered lines as the console.

    Args:
        config: LogConfig instance with logging configuration
    """
    add_app_info.environment = config.environment
    add_app_info.version = config.app_version
    truncate_strings.max_length = config.max_string_length

    level = getattr(logging, config.level.upper())
    root_logger = logging.getLogger()
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout if config.console_output else sys.stderr)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    _installed_handlers.append(console_handler)

    if config.format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=_build_processors(config, renderer),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if config.file_path:
        file_path = Path(config.file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        _installed_handlers.append(logging.FileHandler(file_path))

    root_logger.setLevel(level)
    for handler in _installed_handlers:
        handler.setLevel(level)
        root_logger.addHandler(handler)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance for the given name.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Configured structlog BoundLogger instance
    """
    return structlog.get_logger(name)


@contextmanager
def add_context(**kwargs: Any) -> Iterator[None]:
    """Bind key/value pairs to every log entry made inside the block.

    Backed by ``structlog.contextvars`` so concurrent tasks do not see each
    other's context.

    Example:
        ```python
        with add_context(symbol="BTCUSD", minute="15"):
            logger.info("decision_made")  # includes symbol and minute
        ```
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield


def set_log_level(level: str) -> None:
    """Change the logging level at runtime.

    Applies to the root logger and to the handlers installed by
    ``setup_logging``, including the log file.

    Args:
        level: New log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    numeric = getattr(logging, level.upper())
    logging.getLogger().setLevel(numeric)
    for handler in _installed_handlers:
        handler.setLevel(numeric)


def clear_context() -> None:
    """Drop every context variable bound through ``add_context``."""
    structlog.contextvars.clear_contextvars()
