# core/logging_config.py
"""Configure gateway logging sinks and formatting.

structlog is bridged onto the standard library logging tree so uvicorn, neo4j
and httpx records share one format. Call `setup_logging()` once at startup.
"""

from __future__ import annotations

import logging as stdlib_logging
import logging.handlers
import os
from collections.abc import MutableMapping
from typing import Any

import structlog

from config.settings import GatewaySettings


def filter_internal_keys(logger: Any, name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Remove internal structlog fields from event dict."""
    for key in [k for k in event_dict if k.startswith("_")]:
        event_dict.pop(key, None)
    return event_dict


def simple_log_format_plain(logger: Any, name: str, event_dict: MutableMapping[str, Any]) -> str:
    """Render one human-readable line: timestamp, short logger name, level, message, context."""
    level = event_dict.pop("level", "INFO")
    timestamp = event_dict.pop("timestamp", "")
    logger_name = event_dict.pop("logger", "")
    event = event_dict.pop("event", "")
    exception = event_dict.pop("exception", None)

    parts = []
    if timestamp:
        parts.append(f"{timestamp}")
    if logger_name:
        parts.append(f"[{logger_name.split('.')[-1]}]")
    parts.append(level.upper())
    parts.append(event if event else "")

    context_parts = []
    for key, value in event_dict.items():
        if isinstance(value, str) and len(value) > 80:
            value_str = f"{value[:77]}..."
        else:
            value_str = str(value)
        context_parts.append(f"{key}={value_str}")
    if context_parts:
        parts.append(f"({', '.join(context_parts)})")

    line = " ".join(parts)
    if exception:
        line = f"{line}\n{exception}"
    return line


def build_formatter(log_format: str = "plain") -> structlog.stdlib.ProcessorFormatter:
    """Plain lines for terminals, one JSON object per line for log shippers."""
    renderer = structlog.processors.JSONRenderer(sort_keys=True) if log_format == "json" else simple_log_format_plain
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            filter_internal_keys,
            renderer,
        ],
    )


def setup_logging(settings: GatewaySettings) -> None:
    """Set up structlog and the stdlib handlers for the gateway process.

    Notes:
        This mutates the root logger handler list. Calling it twice replaces the
        handlers installed by the first call.
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = build_formatter(settings.LOG_FORMAT)
    root_logger = stdlib_logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(settings.LOG_LEVEL.upper())

    stream_handler = stdlib_logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if settings.LOG_FILE:
        log_path = os.path.join(settings.LOG_DIR, settings.LOG_FILE)
        try:
            os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
            file_handler = stdlib_logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                mode="a",
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.error(
                f"Failed to configure file logging: {e}. Logging to console only.",
                exc_info=True,
            )

    stdlib_logging.getLogger("neo4j.notifications").setLevel(stdlib_logging.WARNING)
    stdlib_logging.getLogger("neo4j").setLevel(stdlib_logging.WARNING)
    stdlib_logging.getLogger("httpx").setLevel(stdlib_logging.WARNING)
    stdlib_logging.getLogger("httpcore").setLevel(stdlib_logging.WARNING)
    stdlib_logging.getLogger("uvicorn.access").setLevel(stdlib_logging.WARNING)

    structlog.get_logger(__name__).info(
        f"Logging setup complete. Application log level: {settings.LOG_LEVEL.upper()}.",
        environment=settings.ENVIRONMENT,
    )
