"""Process-wide logging setup."""

from __future__ import annotations

import logging
import logging.config
import sys


def configure_logging(level: str = "INFO") -> None:
    """Route every `react_rag.*` logger to stdout at `level`."""
    level = level.upper()
    if not isinstance(logging.getLevelName(level), int):
        level = "INFO"

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "level": level,
                    "formatter": "standard",
                    "stream": sys.stdout,
                },
            },
            "root": {"handlers": ["console"], "level": "WARNING"},
            "loggers": {
                "react_rag": {"level": level},
                "httpx": {"level": "WARNING"},
                "openai": {"level": "WARNING"},
            },
        }
    )
