"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.config
from typing import Any

from .config import LoggingSettings

# Third party loggers that are chatty at INFO level.
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

# Record attributes filled from ``extra=`` by the session layer.
SESSION_FIELDS = ("account", "pool")


class SessionContextFilter(logging.Filter):
    """Default the session fields so records logged without them still format."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in SESSION_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


def session_context(account: str, pool: str) -> dict[str, str]:
    """Return the ``extra`` mapping tagging a record with its account and pool."""
    return {"account": account, "pool": pool}


def _structured_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for key=value session logs."""
    return {
        "format": "{asctime} {levelname} {name} account={account} pool={pool} {message}",
        "style": "{",
    }


def _plain_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for human readable logs."""
    return {
        "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
    }


def configure_logging(settings: LoggingSettings) -> None:
    """Configure application logging according to provided settings."""
    formatter = _structured_formatter() if settings.structured else _plain_formatter()
    quiet_level = "DEBUG" if settings.level.upper() == "DEBUG" else "WARNING"

    dict_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "session_context": {"()": SessionContextFilter},
        },
        "formatters": {
            "default": formatter,
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "filters": ["session_context"],
                "level": settings.level,
            },
        },
        "loggers": {name: {"level": quiet_level} for name in _QUIET_LOGGERS},
        "root": {
            "handlers": ["console"],
            "level": settings.level,
        },
    }

    logging.config.dictConfig(dict_config)


__all__ = ["SESSION_FIELDS", "SessionContextFilter", "configure_logging", "session_context"]
