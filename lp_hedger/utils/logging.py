"""Root logger configuration."""

import logging

from lp_hedger.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "telegram", "urllib3")


def setup_logging():
    """Configure the root logger from LPH_LOG_LEVEL."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
