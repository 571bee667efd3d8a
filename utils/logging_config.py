"""
Logging setup
Console output for every level plus a persistent error log file
"""

import logging
import os
from typing import Optional

from config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
ERROR_LOG_FILENAME = "errors.log"

_HANDLER_MARKER = "_checkout_ledger_handler"


def configure_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> logging.Logger:
    """
    Install console and error-file handlers on the root logger.

    Safe to call more than once; handlers installed by an earlier call are
    replaced rather than duplicated.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    setattr(console_handler, _HANDLER_MARKER, True)
    root.addHandler(console_handler)

    target_dir = log_dir or Config.LOG_DIR
    try:
        os.makedirs(target_dir, exist_ok=True)
        file_handler = logging.FileHandler(
            os.path.join(target_dir, ERROR_LOG_FILENAME),
            mode='a',
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.ERROR)
        setattr(file_handler, _HANDLER_MARKER, True)
        root.addHandler(file_handler)
    except OSError as e:
        logging.getLogger(__name__).warning(f"Failed to setup file logging: {e}")

    return root
