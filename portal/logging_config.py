"""Structured logging setup driven by LoggingSettings.

Configures the root logger once per process; module loggers created with
``logging.getLogger(__name__)`` inherit its handlers. Records are rendered
by structlog, as JSON lines or as console text.
"""
from __future__ import annotations

import logging

import structlog

from .config import LoggingSettings, settings

_HANDLER_MARKER = "_portal_handler"

_PRE_CHAIN = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def build_formatter(log_format: str) -> structlog.stdlib.ProcessorFormatter:
    """Return a stdlib formatter rendering records through structlog.

    Args:
        log_format: ``json`` for one JSON object per line, ``text`` otherwise
    """
    if log_format == "json":
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=False),
        ]
    return structlog.stdlib.ProcessorFormatter(foreign_pre_chain=_PRE_CHAIN, processors=processors)


def setup_logging(config: LoggingSettings | None = None) -> None:
    """Configure root logging from settings.

    Safe to call more than once: handlers installed by a previous call are
    replaced rather than duplicated.

    Args:
        config: Logging settings (defaults to the application settings)
    """
    config = config or settings.logging
    root = logging.getLogger()
    root.setLevel(config.level.upper())

    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    formatter = build_formatter(config.format)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        handlers.append(logging.FileHandler(config.file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARKER, True)
        root.addHandler(handler)

    # SQL echo is controlled by DB_ECHO, keep the engine logger quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
