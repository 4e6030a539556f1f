from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from authdesk.core.logger import LOGGER_NAME, setup_logging


def test_setup_logging_is_idempotent_and_quiets_http_libraries(tmp_path):
    path = os.path.join(str(tmp_path), "logs", "authdesk.log")
    logger = setup_logging(path)
    again = setup_logging(path)
    assert logger is again is logging.getLogger(LOGGER_NAME)
    assert sum(isinstance(h, RotatingFileHandler) for h in logger.handlers) == 1
    assert sum(type(h) is logging.StreamHandler for h in logger.handlers) == 1
    assert logging.getLogger("urllib3").level == logging.WARNING
    assert logger.propagate is False
