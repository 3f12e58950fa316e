"""
Logging configuration for the commission ledger.
"""

import logging
import sys
from typing import Optional

from .config import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Overrides LEDGER_LOG_LEVEL. DEBUG is forced when LEDGER_DEBUG is set.
    """
    settings = get_settings()
    effective_level = level or ("DEBUG" if settings.DEBUG else settings.LOG_LEVEL)

    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(effective_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(effective_level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)

    # SQL echo is controlled by the engine, keep the logger itself quiet
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
