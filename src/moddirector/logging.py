"""Structured logging for Mod-Director.

Console output is colored in development and JSON elsewhere; the optional
rotating file is always JSON. Raw message text must never reach INFO or
above, so a processor strips ``content`` fields from those events.
"""

import logging
import sys
from collections.abc import MutableMapping
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from moddirector.config import Settings, get_settings

# Event keys that may carry raw user text
_CONTENT_KEYS = ("content", "message_content")

_NOISY_LOGGERS = ("httpx", "httpcore")


def redact_message_content(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Drop raw message text from anything above debug level."""
    if method_name != "debug":
        for key in _CONTENT_KEYS:
            if key in event_dict:
                event_dict[key] = "[redacted]"
    return event_dict


def _file_handler(settings: Settings, level: int) -> RotatingFileHandler | None:
    try:
        Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=settings.log_file_path,
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        # Console-only logging still works
        print(f"Warning: Could not set up file logging: {e}", file=sys.stderr)
        return None
    handler.setLevel(level)
    return handler


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer]
    )


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog over stdlib logging.

    Args:
        settings: Settings to read; defaults to :func:`get_settings`.
    """
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", level=log_level, handlers=[])

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(
        _formatter(
            structlog.dev.ConsoleRenderer(colors=True)
            if settings.is_development
            else structlog.processors.JSONRenderer()
        )
    )
    logging.root.addHandler(console_handler)

    if settings.log_to_file:
        file_handler = _file_handler(settings, log_level)
        if file_handler is not None:
            file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
            logging.root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            redact_message_content,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
