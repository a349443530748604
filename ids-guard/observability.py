"""Structured logging setup.

Production renders one JSON object per line (easy to ship and grep),
development renders coloured console output. An optional rotating log file
keeps long-running servers from filling the disk.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from typing import List, Optional

import structlog
from structlog.typing import Processor


def configure_logging(
    environment: str = "production",
    level: str = "INFO",
    log_path: Optional[str] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backups: int = 1,
) -> None:
    """Route structlog through stdlib logging handlers. Call once at startup."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if environment == "production":
        renderer: Processor = structlog.processors.JSONRenderer(sort_keys=True)
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_path:
        os.makedirs(os.path.dirname(os.path.abspath(log_path)), exist_ok=True)
        if max_bytes > 0:
            handlers.append(
                logging.handlers.RotatingFileHandler(
                    log_path, maxBytes=max_bytes, backupCount=max(backups, 0), encoding="utf-8"
                )
            )
        else:
            handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(log_level)
