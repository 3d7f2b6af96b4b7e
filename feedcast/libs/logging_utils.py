"""Logging setup shared by the API, the RQ workers and the maintenance scripts.

Log calls attach structured fields through ``extra=`` (``event`` plus whatever
identifies the work item). The JSON formatter emits them as top-level keys and
the console formatter appends them as ``key=value`` pairs.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.config import dictConfig
from typing import Any, Dict, Iterator, Mapping, Tuple

_DEV_ENVIRONMENTS = {"local", "dev", "test"}
_ANSI = {
    "red": "\033[31m",
    "yellow": "\033[33m",
    "green": "\033[32m",
    "cyan": "\033[36m",
    "magenta": "\033[35m",
}
_ANSI_RESET = "\033[0m"
_LEVEL_COLORS = ((logging.ERROR, "red"), (logging.WARNING, "yellow"))

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _environment() -> str:
    return os.getenv("FEEDCAST_ENVIRONMENT", "dev").lower()


def color_enabled() -> bool:
    explicit = os.getenv("FEEDCAST_LOG_COLOR")
    if explicit:
        return explicit == "1"
    return _environment() in _DEV_ENVIRONMENTS


def colorize(text: str, color: str = "red") -> str:
    code = _ANSI.get(color)
    if not code or not color_enabled():
        return text
    return f"{code}{text}{_ANSI_RESET}"


def structured_fields(record: logging.LogRecord) -> Iterator[Tuple[str, Any]]:
    for key, value in record.__dict__.items():
        if key not in _STANDARD_ATTRS and not key.startswith("_"):
            yield key, value


class JsonFormatter(logging.Formatter):
    """One JSON object per line, extras flattened alongside the message."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(structured_fields(record))
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ColorTextFormatter(logging.Formatter):
    def __init__(self, fmt: str | None = TEXT_FORMAT, **kwargs: Any) -> None:
        super().__init__(fmt, **kwargs)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = " ".join(f"{key}={value}" for key, value in structured_fields(record))
        if pairs:
            line = f"{line} | {pairs}"
        for threshold, color in _LEVEL_COLORS:
            if record.levelno >= threshold:
                return colorize(line, color)
        return line


def parse_level_overrides(raw: str | None) -> Dict[str, str]:
    """``"rq.worker=WARNING,httpx=info"`` -> ``{"rq.worker": "WARNING", "httpx": "INFO"}``"""

    overrides: Dict[str, str] = {}
    for item in (raw or "").split(","):
        name, sep, level = item.partition("=")
        if sep and name.strip() and level.strip():
            overrides[name.strip()] = level.strip().upper()
    return overrides


def build_logging_config(
    level: str,
    fmt: str = "json",
    overrides: Mapping[str, str] | None = None,
) -> Dict[str, Any]:
    formatter = "text" if fmt == "text" else "json"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JsonFormatter},
            "text": {"()": ColorTextFormatter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": formatter,
            }
        },
        "loggers": {name: {"level": value} for name, value in (overrides or {}).items()},
        "root": {"handlers": ["console"], "level": level},
    }


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Install the console handler; arguments win over ``FEEDCAST_LOG_*``."""

    default_level = "DEBUG" if _environment() in _DEV_ENVIRONMENTS else "INFO"
    resolved_level = (level or os.getenv("FEEDCAST_LOG_LEVEL") or default_level).upper()
    resolved_fmt = (fmt or os.getenv("FEEDCAST_LOG_FORMAT") or "json").lower()
    overrides = parse_level_overrides(os.getenv("FEEDCAST_LOG_LEVELS"))
    dictConfig(build_logging_config(resolved_level, resolved_fmt, overrides))


__all__ = [
    "ColorTextFormatter",
    "JsonFormatter",
    "build_logging_config",
    "color_enabled",
    "colorize",
    "configure_logging",
    "parse_level_overrides",
    "structured_fields",
]
