"""
Logging setup for pgtestkit.

The library only ever logs through ``logging.getLogger(__name__)``. Output is
opt-in: ``configure_logging()`` attaches a stderr handler to the ``pgtestkit``
logger whose records are rendered by a structlog ``ProcessorFormatter``. With
``ENV=development`` records go through the console renderer, otherwise they
are written as one JSON object per line.
"""

import logging
import sys
from typing import IO, Any, List, Optional

import structlog
from structlog.processors import CallsiteParameter

from pgtestkit.config.config_manager import ConfigManager

PACKAGE_LOGGER = "pgtestkit"

_handler: Optional[logging.Handler] = None


def _pre_chain() -> List[Any]:
    """Processors applied to every stdlib record before rendering."""
    return [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        # LoggerAdapter / extra={'database': ...} fields
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.CallsiteParameterAdder(
            {CallsiteParameter.FILENAME, CallsiteParameter.LINENO}
        ),
    ]


def build_formatter(development: bool = False) -> structlog.stdlib.ProcessorFormatter:
    """
    Build the formatter for the pgtestkit handler.

    Args:
        development: Render for humans instead of JSON

    Returns:
        ProcessorFormatter usable on any logging.Handler
    """
    if development:
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=False),
        ]
    else:
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(default=str),
        ]
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=processors,
    )


def configure_logging(
    enabled: Optional[bool] = None,
    development: Optional[bool] = None,
    level: int = logging.DEBUG,
    stream: Optional[IO[str]] = None,
    config_manager: Optional[ConfigManager] = None,
) -> Optional[logging.Handler]:
    """
    Attach (or detach) the pgtestkit log handler.

    Args:
        enabled: Turn output on or off; defaults to PGTESTKIT_LOG, else off
        development: Force the human-readable format; defaults to ENV=development
        level: Level for the pgtestkit logger
        stream: Destination stream (defaults to stderr)
        config_manager: Source for the environment toggles

    Returns:
        The installed handler, or None when logging is disabled
    """
    global _handler

    config_manager = config_manager or ConfigManager()
    if enabled is None:
        enabled = bool(config_manager.logging_enabled)
    if development is None:
        development = config_manager.is_development

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if _handler is not None:
        package_logger.removeHandler(_handler)
        _handler = None

    if not enabled:
        return None

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(build_formatter(development))
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    _handler = handler
    return handler
