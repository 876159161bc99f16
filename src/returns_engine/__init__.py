"""Return transaction lifecycle engine backed by an Excel master workbook."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("RETURNS_ENGINE_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "returns_engine.log"
LOG_LEVEL_ENV = "RETURNS_ENGINE_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(threadName)s | %(message)s"


def _console_level() -> int:
    """Resolve the console verbosity from ``RETURNS_ENGINE_LOG_LEVEL``.

    Unknown values fall back to ``INFO`` so a typo never silences errors.
    """

    level = logging.getLevelName(os.environ.get(LOG_LEVEL_ENV, "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _configure_logging() -> logging.Logger:
    """Attach a rotating audit file and a stderr stream to the package logger.

    The file keeps DEBUG detail (cache fills, saga steps) for post-mortems of
    failed transitions; the console only shows what the operator asked for.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(f"Warning: returns engine log file unavailable at '{LOG_FILE}': {exc}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(_console_level())
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logging configured (file=%s, console level=%s)", LOG_FILE, logging.getLevelName(_console_level()))

__all__ = ["__version__", "log"]
