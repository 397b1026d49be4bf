"""
utils.py — Logging Setup and File Helpers
==========================================

Helpers shared by the engine, the training CLI and the calibration CLI.
"""

import os
import logging
import tempfile

import joblib

from . import config


def setup_logging(level: str = None) -> None:
    """
    Attach one console handler to the ``detection`` logger.

    Every ``detection.*`` module logger propagates to it. Calling this
    again only updates the level.

    Args:
        level: Level name such as "DEBUG" or "WARNING".
               Falls back to config.LOG_LEVEL (``LEAK_LOG_LEVEL``).
    """
    level = level or config.LOG_LEVEL
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(name)s] %(levelname)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    detection_logger = logging.getLogger("detection")
    detection_logger.setLevel(numeric_level)

    # Avoid duplicate handlers on repeated calls
    if not detection_logger.handlers:
        detection_logger.addHandler(handler)


def ensure_saved_dir(path: str = None) -> str:
    """
    Ensure the directory for saved artifacts exists.

    Args:
        path: Directory to create. Defaults to config.SAVED_DIR.

    Returns:
        Absolute path to the directory.
    """
    path = os.path.abspath(path or config.SAVED_DIR)
    os.makedirs(path, exist_ok=True)
    return path


def atomic_dump(obj, path: str) -> None:
    """
    Serialize ``obj`` with joblib so that ``path`` is either the old file
    or the complete new one, never a partial write.

    The payload goes to a temporary file in the same directory, which is
    then moved over ``path`` with ``os.replace``.

    Raises:
        OSError: If the directory cannot be created or written.
    """
    directory = ensure_saved_dir(os.path.dirname(os.path.abspath(path)))
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".joblib", dir=directory)
    os.close(fd)
    try:
        joblib.dump(obj, tmp_path)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
