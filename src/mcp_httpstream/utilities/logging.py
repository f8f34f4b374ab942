"""Logging utilities for the HTTP stream transport."""

import logging
from typing import Literal

# Library code configures only its own namespace logger, never the root logger.
_LOGGER_NAME = "mcp_httpstream"


def get_logger(name: str) -> logging.Logger:
    """Get a logger nested under the package namespace.

    Args:
        name: The name of the logger.

    Returns:
        A configured logger instance.
    """
    if name != _LOGGER_NAME and not name.startswith(_LOGGER_NAME + "."):
        name = f"{_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO",
) -> None:
    """Configure logging for the transport.

    Sets the level of the ``mcp_httpstream`` namespace logger and attaches a
    rich handler to it once; repeated calls only change the level.

    Args:
        level: The log level to use.
    """
    transport_logger = logging.getLogger(_LOGGER_NAME)
    transport_logger.setLevel(level)

    if transport_logger.handlers:
        return

    from rich.console import Console
    from rich.logging import RichHandler

    handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True)
    transport_logger.addHandler(handler)
