"""
Logging for the stl_falsifier package.

Library modules only create ``logging.getLogger(__name__)`` loggers; nothing
is configured until an application (or the CLI) calls setup_logging. Verbose
search progress is printed separately by the solver, so the console handler
writes to stderr and keeps stdout for results.
"""
import logging
import sys
from typing import Mapping, Optional, Union

PACKAGE = "stl_falsifier"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _as_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown logging level: {level}")
    return value


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None,
                  module_levels: Optional[Mapping[str, Union[int, str]]] = None) -> logging.Logger:
    """
    Route the package's log records to stderr and, optionally, a file.

    Args:
        level: Level name or number for the whole package
        log_file: Also write records here (overwritten on each call)
        module_levels: Per-module overrides relative to the package, e.g.
            {"executor": "DEBUG"} to see each simulation fault

    Returns:
        The package logger
    """
    level = _as_level(level)
    logger = logging.getLogger(PACKAGE)
    logger.setLevel(level)
    logger.propagate = False

    # a second call replaces the handlers of the first
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt='%H:%M:%S')
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    for module, module_level in (module_levels or {}).items():
        logging.getLogger(f"{PACKAGE}.{module}").setLevel(_as_level(module_level))

    logger.debug("Logging initialized (level %s)", logging.getLevelName(level))
    return logger
