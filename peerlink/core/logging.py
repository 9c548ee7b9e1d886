"""Logging configuration."""
import logging
import sys
from typing import Optional

from peerlink.core.config import settings

# Chatty per-packet loggers from the media and ICE stacks
_QUIET_LOGGERS = ("aiortc", "aioice", "sqlalchemy.engine")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure application logging.

    ``level`` defaults to the ``LOG_LEVEL`` setting.
    """
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger(__name__)
