from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Iterable

LOGGER_NAME = "authdesk"

# chatty libraries whose INFO/DEBUG output would drown the per-tick log lines
NOISY_LOGGERS = ("urllib3", "requests")


def setup_logging(
    log_file: str = os.path.join("logs", "authdesk.log"),
    *,
    level: int = logging.INFO,
    console_level: int = logging.WARNING,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> logging.Logger:
    """
    Configure the shared "authdesk" logger once per process.

    Calling it again reuses the handlers already attached.
    """
    os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        fh = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
        fh.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
        logger.addHandler(fh)

    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        sh = logging.StreamHandler()
        sh.setLevel(console_level)
        sh.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        logger.addHandler(sh)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger
