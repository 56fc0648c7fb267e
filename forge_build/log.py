"""Process-wide logging setup.

Modules log through ``logging.getLogger(__name__)``; this module only
installs the root handler, rendering records either for a console or as
one JSON object per line.
"""

from __future__ import annotations

import logging
import sys

import structlog

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "error": logging.ERROR,
}

LOG_FORMATS = ("console", "json")


def setup_logging(level: str = "info", log_format: str = "console") -> None:
    """Configure the root logger.

    Args:
        level: One of "debug", "info" or "error".
        log_format: Either "console" or "json".

    Raises:
        ValueError: If level or format is not recognised.
    """
    try:
        log_level = LOG_LEVELS[level.lower()]
    except KeyError:
        raise ValueError(
            f"invalid log level {level!r}, expected one of {sorted(LOG_LEVELS)}"
        ) from None
    if log_format not in LOG_FORMATS:
        raise ValueError(
            f"invalid log format {log_format!r}, expected one of {list(LOG_FORMATS)}"
        )

    pre_chain: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        pre_chain.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)


__all__ = ["LOG_FORMATS", "LOG_LEVELS", "setup_logging"]
