"""Logging configuration for the reasoning bank.

IMPORTANT: MCP servers using STDIO transport must log to stderr only.
stdout is reserved for the MCP protocol communication.
"""

import sys

from loguru import logger

# Remove default handler
logger.remove()

LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)

_handler_id: int | None = None


def configure_logging(level: str = "INFO", log_format: str = "pretty") -> None:
    """(Re)install the stderr sink.

    Args:
        level: Minimum level to emit.
        log_format: 'pretty' for colorized lines, 'json' for one JSON object per record.
    """
    global _handler_id
    if _handler_id is not None:
        logger.remove(_handler_id)

    if log_format == "json":
        _handler_id = logger.add(sys.stderr, level=level.upper(), serialize=True)
    else:
        _handler_id = logger.add(
            sys.stderr, format=LOG_FORMAT, level=level.upper(), colorize=True
        )


configure_logging()


def get_logger(name: str) -> "logger":
    """Get a logger instance bound to a module name."""
    return logger.bind(name=name)
