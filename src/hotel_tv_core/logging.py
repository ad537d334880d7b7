"""Structured logging helpers."""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from .config import Config

ROOT_LOGGER = "hoteltv"
REDACTED = "***REDACTED***"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_SENSITIVE_KEYS = frozenset({"authorization", "x-api-key", "cookie", "set-cookie", "token"})

# Logger name -> Config attribute overriding the global level for that subtree.
_SUBSYSTEM_LEVELS: Dict[str, Optional[str]] = {
    ROOT_LOGGER: None,
    f"{ROOT_LOGGER}.db": None,
    f"{ROOT_LOGGER}.store": None,
    f"{ROOT_LOGGER}.cache": None,
    f"{ROOT_LOGGER}.migrations": None,
    f"{ROOT_LOGGER}.notifications": None,
    f"{ROOT_LOGGER}.devices": None,
    f"{ROOT_LOGGER}.scheduler": None,
    f"{ROOT_LOGGER}.health": None,
    f"{ROOT_LOGGER}.pms": "pms_log_level",
    f"{ROOT_LOGGER}.pms.client": "pms_log_level",
    f"{ROOT_LOGGER}.api": "api_log_level",
    f"{ROOT_LOGGER}.api.middleware": "api_log_level",
    f"{ROOT_LOGGER}.realtime": "realtime_log_level",
    "uvicorn": "api_log_level",
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are nested under ``context``."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def redact_mapping(values: Mapping[str, Any], extra_keys: Iterable[str] = ()) -> Dict[str, Any]:
    """Copy ``values`` with credentials (headers, tokens) masked."""

    sensitive = _SENSITIVE_KEYS | {key.lower() for key in extra_keys}
    return {
        key: REDACTED if key.lower() in sensitive else value for key, value in values.items()
    }


def _level_for(config: Config, attribute: Optional[str]) -> str:
    override = getattr(config, attribute) if attribute else None
    return (override or config.log_level).upper()


def configure_logging(config: Config) -> None:
    """Install console logging for every ``hoteltv`` subsystem."""

    level = config.log_level.upper()
    if config.log_format == "json":
        formatter: Dict[str, Any] = {"()": f"{__name__}.JsonFormatter"}
    else:
        formatter = {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            "datefmt": "%Y-%m-%dT%H:%M:%S%z",
        }

    loggers = {
        name: {"level": _level_for(config, attribute), "handlers": ["console"], "propagate": False}
        for name, attribute in _SUBSYSTEM_LEVELS.items()
    }
    # Per-request access lines come from the API middleware instead.
    loggers["uvicorn.access"] = {"level": "WARNING", "handlers": ["console"], "propagate": False}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": formatter},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                }
            },
            "loggers": loggers,
            "root": {"level": level, "handlers": ["console"]},
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Return a namespaced logger for the requested subsystem."""

    return logging.getLogger(name)
