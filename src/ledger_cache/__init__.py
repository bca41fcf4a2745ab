"""Cached read model over an Excel receivables ledger.

The package keeps per-entity document slices and a transaction id index in
memory, so balance and open-document queries avoid rescanning the workbook.
Importing it sets up the shared ``ledger_cache`` logger used by every module.

Environment:
    LEDGER_CACHE_LOG_DIR: Directory for the rotating log file. Defaults to
        ``.logs`` under the project root.
    LEDGER_CACHE_LOG_LEVEL: Level name for the file handler (``INFO``).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping, Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE_NAME = "ledger_cache.log"
LOG_DIR_ENV = "LEDGER_CACHE_LOG_DIR"
LOG_LEVEL_ENV = "LEDGER_CACHE_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def resolve_log_file(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Return the log file path, honouring ``LEDGER_CACHE_LOG_DIR``."""

    environ = os.environ if environ is None else environ
    override = (environ.get(LOG_DIR_ENV) or "").strip()
    log_dir = Path(override).expanduser() if override else DEFAULT_LOG_DIR
    return log_dir / LOG_FILE_NAME


def resolve_log_level(environ: Optional[Mapping[str, str]] = None) -> int:
    """Map ``LEDGER_CACHE_LOG_LEVEL`` to a logging level, falling back to INFO."""

    environ = os.environ if environ is None else environ
    name = (environ.get(LOG_LEVEL_ENV) or "").strip().upper()
    level = logging.getLevelName(name) if name else logging.INFO
    return level if isinstance(level, int) else logging.INFO


def _file_handler(log_file: Path, level: int, formatter: logging.Formatter) -> Optional[logging.Handler]:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{log_file}': {exc}", file=sys.stderr)
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _configure_logging(environ: Optional[Mapping[str, str]] = None) -> logging.Logger:
    """Attach the file and stderr handlers once per process."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = resolve_log_level(environ)
    logger.setLevel(min(level, logging.INFO))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(resolve_log_file(environ), level, formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    # Console output stays quiet so command results on stdout are readable.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Ledger cache logging ready")
