"""Centralized logging for floorplan3d.

Every module logs through loguru (``from loguru import logger``); this
module only configures the sinks: a colored console sink and a rotating
file sink in the user's log directory.

Usage:
    from floorplan3d.core.logging import setup_logging
    setup_logging(config)
"""

import sys
from pathlib import Path

from loguru import logger
from platformdirs import user_log_dir

from floorplan3d.config.manager import APP_NAME, ConfigManager


_LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

_LOG_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{message}"
)

_log_dir: Path | None = None


def get_log_dir() -> Path:
    """Return the directory where log files are stored."""
    global _log_dir
    if _log_dir is None:
        _log_dir = Path(user_log_dir(APP_NAME, APP_NAME))
    return _log_dir


def get_current_log_path() -> Path:
    """Return the path to the active log file."""
    return get_log_dir() / "floorplan3d.log"


def setup_logging(config: ConfigManager, verbose: bool = False):
    """Configure loguru sinks from the ``logging`` config group.

    ``verbose`` forces DEBUG on the console regardless of the configured level.
    The file sink always records DEBUG so a failed run can be diagnosed later.
    """
    level = "DEBUG" if verbose else config.get("logging", "log_level", "INFO")
    log_to_file = config.get("logging", "log_to_file", True)
    console_output = config.get("logging", "log_console_output", True)
    retention_days = config.get("logging", "log_retention_days", 30)
    max_size_mb = config.get("logging", "log_max_size_mb", 50)

    logger.remove()

    if console_output:
        logger.add(
            sys.stderr,
            format=_LOG_FORMAT,
            level=level,
            colorize=True,
        )

    if log_to_file:
        log_path = get_current_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(log_path),
            format=_LOG_FILE_FORMAT,
            level="DEBUG",
            rotation=f"{max_size_mb} MB",
            retention=f"{retention_days} days",
            compression="zip",
            encoding="utf-8",
            enqueue=True,
        )

        logger.info(f"Log file: {log_path}")

    logger.info(f"Logging initialized (console={level}, file=DEBUG)")
