"""
Logging configuration for the command line entrypoints.

Library modules only ever call logging.getLogger(__name__); handlers are
installed here, once, by the process that owns stdout/stderr.
"""

import logging
import sys
from typing import Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Chatty third-party loggers
_QUIET_LOGGERS = ("watchdog", "uvicorn.access")


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """
    Install a stderr handler on the root logger.

    Args:
        level: Level name ("DEBUG", "info", ...) or logging constant
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
