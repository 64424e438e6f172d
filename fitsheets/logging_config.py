"""Application-wide logging configuration utilities."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from fitsheets.settings import LOGS_DIR

LOG_FILENAME = "fitsheets.log"

_LOG_PATH: Optional[Path] = None


def configure_logging(level: int = logging.INFO, log_path: Optional[Path] = None) -> Path:
    """Configure logging to write to the FitSheets log file.

    Parameters
    ----------
    level:
        The minimum logging level for the root logger.  ``logging.INFO``
        captures retries, spreadsheet switches and permission changes without
        logging every request.
    log_path:
        Optional override of the log file location, mainly for tests.  The
        default lives in the per-user data directory.

    Returns
    -------
    pathlib.Path
        The path to the log file.
    """

    global _LOG_PATH

    if _LOG_PATH is not None and log_path is None:
        return _LOG_PATH

    target = Path(log_path) if log_path is not None else LOGS_DIR / LOG_FILENAME
    target.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.setLevel(level)
    else:
        root_logger.setLevel(min(root_logger.level, level))

    already_configured = any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == os.path.abspath(target)
        for handler in root_logger.handlers
    )
    if not already_configured:
        file_handler = logging.FileHandler(target, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    _LOG_PATH = target
    root_logger.debug("Logging configured. Writing to %s", target)
    return target


def get_log_path() -> Path:
    """Return the path to the FitSheets log file, configuring logging if needed."""

    if _LOG_PATH is None:
        return configure_logging()
    return _LOG_PATH


__all__ = ["LOG_FILENAME", "configure_logging", "get_log_path"]
