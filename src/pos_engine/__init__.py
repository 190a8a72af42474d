"""Inventory-and-cash reconciliation engine for a single point-of-sale outlet."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("POS_ENGINE_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "pos_engine.log"
LOG_LEVEL = os.environ.get("POS_ENGINE_LOG_LEVEL", "INFO").upper()


def _configure_logging() -> logging.Logger:
    """Attach a rotating file handler and a stderr handler to the package logger.

    Cash movements and stock mutations are logged at INFO so the file doubles
    as a human-readable trail next to the workbook's own movement sheet. The
    console only shows warnings and above so CLI output stays readable.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'pos_engine' package.")
