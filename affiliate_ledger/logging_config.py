import logging
from logging.config import dictConfig

from .config import get_settings


def build_logging_config(level: str = "INFO") -> dict:
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
            "uvicorn": {"handlers": ["console"], "level": level},
            "fastapi": {"handlers": ["console"], "level": level},
            "affiliate_ledger": {"handlers": ["console"], "level": level, "propagate": False},
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
    }


def setup_logging() -> None:
    """Apply the logging configuration."""
    dictConfig(build_logging_config(get_settings().LOG_LEVEL.upper()))
    logging.getLogger(__name__).debug("Logging configured")
