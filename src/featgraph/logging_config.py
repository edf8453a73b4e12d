"""
featgraph Logging Configuration

Configurable logging with debug mode support.
"""

import logging
import os
import sys
from typing import Optional


def debug_enabled() -> bool:
    """Whether FEATGRAPH_DEBUG asks for verbose logging."""
    return os.environ.get("FEATGRAPH_DEBUG", "").lower() in ("1", "true", "yes")


def setup_logging(
    level: Optional[int] = None,
    quiet: bool = False
) -> logging.Logger:
    """Set up logging configuration.

    Args:
        level: Logging level (default: DEBUG if FEATGRAPH_DEBUG, else WARNING)
        quiet: If True, suppress console output

    Returns:
        Configured logger
    """
    debug = debug_enabled()
    if level is None:
        level = logging.DEBUG if debug else logging.WARNING

    logger = logging.getLogger("featgraph")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    if quiet:
        logger.addHandler(logging.NullHandler())
        return logger

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    if debug:
        console_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    else:
        console_format = "%(message)s"
    console_handler.setFormatter(logging.Formatter(console_format))
    logger.addHandler(console_handler)

    return logger


def get_logger(name: str = "featgraph") -> logging.Logger:
    """Get a logger under the featgraph namespace.

    Args:
        name: Logger name (will be prefixed with 'featgraph.')
    """
    if not name.startswith("featgraph"):
        name = f"featgraph.{name}"
    return logging.getLogger(name)


ENV_VARS = {
    "FEATGRAPH_DEBUG": {
        "description": "Enable debug mode with verbose logging",
        "values": ["1", "true", "yes"],
        "default": "false"
    },
    "FEATGRAPH_MODE": {
        "description": "Override workflow.mode",
        "values": ["branch-per-feature", "trunk-based"],
    },
    "FEATGRAPH_BASE_BRANCH": {
        "description": "Override workflow.base_branch",
    },
    "FEATGRAPH_AUTO_COMMIT": {
        "description": "Override auto_commit",
        "values": ["1", "true", "yes", "0", "false", "no"],
    },
}
