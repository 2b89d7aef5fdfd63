"""Logging setup shared by the CLI, the API and the scheduler."""
import logging
import sys
from typing import Optional

from erpsync.config import config

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "h2")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once, from LOG_LEVEL unless overridden."""
    level_name = (level or config.LOG_LEVEL or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
