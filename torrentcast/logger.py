"""Structured logging configuration using structlog.

Logs go to a file by default so they do not interleave with the media
player's terminal output. JSON output in production, console-friendly
output in development.
"""

import logging
import sys
from pathlib import Path
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from torrentcast.config import Settings, settings

SENSITIVE_KEYS = {
    "apikey",
    "api_key",
    "token",
    "password",
    "secret",
    "authorization",
}


def add_log_level(_logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add log level to the event dict."""
    if method_name == "warn":
        # Structlog uses "warn", but we want "warning"
        event_dict["level"] = "warning"
    else:
        event_dict["level"] = method_name
    return event_dict


def censor_sensitive_data(
    _logger: logging.Logger, _method_name: str, event_dict: EventDict
) -> EventDict:
    """Censor API keys and similar values from log events.

    Keys are matched by name; URLs are scrubbed of apikey query parameters.
    """

    def _censor_value(key: str, value: Any) -> Any:
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            return "***"
        if isinstance(value, dict):
            return {k: _censor_value(k, v) for k, v in value.items()}
        if isinstance(value, str) and "apikey=" in value:
            return _scrub_apikey(value)
        return value

    return {key: _censor_value(key, value) for key, value in event_dict.items()}


def _scrub_apikey(text: str) -> str:
    """Replace the value of every apikey= query parameter with ***."""
    parts = text.split("apikey=")
    scrubbed = [parts[0]]
    for part in parts[1:]:
        end = len(part)
        for sep in ("&", " ", "'", '"'):
            idx = part.find(sep)
            if idx != -1:
                end = min(end, idx)
        scrubbed.append("***" + part[end:])
    return "apikey=".join(scrubbed)


def configure_logging(config: Settings = settings) -> None:
    """Configure structlog for the application.

    Args:
        config: Settings to read log level, environment and log file from.
    """
    level = getattr(logging, config.log_level.upper())

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        censor_sensitive_data,
    ]

    if config.is_production:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=config.log_file is None,
            exception_formatter=structlog.dev.plain_traceback,
        )

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler: logging.Handler
    if config.log_file is not None:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # httpx logs every request URL at INFO, including apikey parameters
    logging.getLogger("httpx").setLevel(logging.WARNING)
