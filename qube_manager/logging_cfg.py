from __future__ import annotations

"""qube_manager.logging_cfg - console plus rotating, gzip-compressed log file.
"""

import gzip
import logging
import os
import shutil
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FILENAME = "manager.log"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 3

TRANSPORT_LOGGER = "qube_manager.transport"


def _gzip_namer(name: str) -> str:
    return name + ".gz"


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as src, gzip.open(dest, "wb") as dst:
        shutil.copyfileobj(src, dst)
    os.remove(source)


def setup_logging(level: str | int = "INFO", log_dir: str | Path | None = None) -> Path | None:
    """Configure root logger to log to console and optional rotating file.

    Returns the path to the log file if written, else None.
    """
    level_num = (
        getattr(logging, str(level).upper(), logging.INFO)
        if isinstance(level, str)
        else level
    )

    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
        h.close()

    fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    logging.basicConfig(level=level_num, format=fmt, datefmt=datefmt)

    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        log_path = Path(log_dir) / LOG_FILENAME
        fh = RotatingFileHandler(log_path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT)
        fh.namer = _gzip_namer
        fh.rotator = _gzip_rotator
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)
        return log_path
    return None


def configure_transport_logging(verbose: bool) -> None:
    """Hold relay chatter at WARNING unless running verbose."""
    logging.getLogger(TRANSPORT_LOGGER).setLevel(logging.DEBUG if verbose else logging.WARNING)


# Initialise default logging as soon as module is imported, but only once.
if not logging.getLogger().hasHandlers():
    setup_logging(level=os.getenv("QUBE_LOG_LEVEL", "INFO"))
