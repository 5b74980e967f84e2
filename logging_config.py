"""
logging_config.py

Loguru console setup shared by the report runner and the Streamlit app.
"""

import sys

from loguru import logger


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def configure_logging(level: str = "INFO") -> int:
    """Replace loguru's default sink with a formatted stderr sink; return its id."""
    logger.remove()
    return logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
