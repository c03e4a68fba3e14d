"""
Logging Configuration Module
One "spot_impact" logger tree for the engine, configured from the
``logging`` section of config.yaml or the SPOT_IMPACT_LOG_* variables
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, Mapping, Optional, Union


LOGGER_NAME = "spot_impact"
LOG_LEVEL_ENV = "SPOT_IMPACT_LOG_LEVEL"
LOG_FILE_ENV = "SPOT_IMPACT_LOG_FILE"

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Marks handlers installed here so reconfiguring never touches foreign ones
_HANDLER_ATTR = '_spot_impact_handler'


def parse_level(level: Union[int, str, None], default: int = logging.INFO) -> int:
    """Logging level from a number or a level name ("debug", "WARNING", ...)"""
    if level is None or level == '':
        return default
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else default


def setup_logging(
    level: Union[int, str, None] = logging.INFO,
    log_file: Optional[str] = None,
    console: bool = True
) -> logging.Logger:
    """
    (Re)configure the engine logger

    Replaces the handlers previously installed by this function, so it can
    be called again when a new configuration is loaded.

    Args:
        level: Level number or name
        log_file: Optional path of a log file; parent directories are created
        console: Whether to log to stdout

    Returns:
        The "spot_impact" logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(parse_level(level))

    for handler in [h for h in logger.handlers if getattr(h, _HANDLER_ATTR, False)]:
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = []
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_ATTR, True)
        logger.addHandler(handler)

    return logger


def configure_logging(config: Mapping[str, Any]) -> logging.Logger:
    """
    Apply the ``logging`` section of a resolved configuration

    SPOT_IMPACT_LOG_LEVEL and SPOT_IMPACT_LOG_FILE take precedence over
    the file values.
    """
    section = config.get('logging') or {}
    return setup_logging(
        level=os.environ.get(LOG_LEVEL_ENV) or section.get('level'),
        log_file=os.environ.get(LOG_FILE_ENV) or section.get('file'),
        console=bool(section.get('console', True)),
    )


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    """Child logger of the engine tree ("reference" -> "spot_impact.reference")"""
    if name != LOGGER_NAME and not name.startswith(LOGGER_NAME + '.'):
        name = f"{LOGGER_NAME}.{name}"
    return logging.getLogger(name)


logger = setup_logging(
    level=os.environ.get(LOG_LEVEL_ENV),
    log_file=os.environ.get(LOG_FILE_ENV)
)
