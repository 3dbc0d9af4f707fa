"""Loguru setup for the gateway.

Modules log through ``from .logging_setup import logger`` and never configure
handlers themselves; applications call :func:`setup_logging` (or
:func:`configure_from`) once at startup. Messages follow the
``"Event | key=value ..."`` convention so they stay greppable.
"""
import sys
from pathlib import Path
from typing import Optional

from loguru import logger as _logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> "
    "<level>{level: <7}</level> "
    "<cyan>{name}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def setup_logging(
    log_file: Optional[str] = "gateway.log",
    level: str = "INFO",
    enable_console: bool = True,
    serialize: bool = False,
    rotation: str = "50 MB",
    retention: str = "14 days",
) -> None:
    """Replace loguru's default handler with the gateway's sinks.

    Args:
        log_file: Path of the rotating log file; None disables file output
        level: Minimum level for every sink
        enable_console: Also log to stderr
        serialize: Write JSON records instead of formatted lines
        rotation, retention: Passed through to loguru's file sink
    """
    _logger.remove()

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(path),
            format=FILE_FORMAT,
            level=level.upper(),
            serialize=serialize,
            rotation=rotation,
            retention=retention,
        )

    if enable_console:
        _logger.add(
            sys.stderr,
            format=CONSOLE_FORMAT,
            level=level.upper(),
            serialize=serialize,
            colorize=not serialize and sys.stderr.isatty(),
        )


def configure_from(config) -> None:
    """Apply a :class:`~lnm_gateway.config.LoggingConfig`."""
    setup_logging(
        log_file=config.log_file,
        level=config.level,
        enable_console=config.enable_console,
        serialize=config.serialize,
        rotation=config.rotation,
        retention=config.retention,
    )


logger = _logger
