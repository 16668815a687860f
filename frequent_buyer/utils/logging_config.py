"""
Logging configuration.

Applied once by create_app() before any extension is initialised.
"""
import logging
import os
from logging.config import dictConfig


def build_logging_config(level: str = None) -> dict:
    level = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "frequent_buyer": {"handlers": ["console"], "level": level, "propagate": False},
            "apscheduler": {"handlers": ["console"], "level": "WARNING", "propagate": False},
            "httpx": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
    }


def setup_logging(level: str = None) -> None:
    """Apply the logging configuration."""
    dictConfig(build_logging_config(level))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
