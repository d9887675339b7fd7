"""Logging bootstrap for structlog over stdlib logging."""

from __future__ import annotations

import logging

import structlog

from plugbus.core.models.config import LogConfig


def configure_logging(config: LogConfig | None = None) -> None:
    """
    Configure structlog and the root logger.

    Structured output renders JSON lines; otherwise structlog's console
    renderer is used. Records from the stdlib `logging` module pass through
    the same formatter.

    Args:
        config: Logging configuration; defaults are used when None
    """
    if config is None:
        config = LogConfig()

    level = getattr(logging, config.level, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    shared_processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor
    if config.structured:
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False, separators=(",", ":"))
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    if config.file is not None:
        target = config.file.expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
