from __future__ import annotations

import dataclasses
import json
import logging
import os
import sys
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Emit one ``event=name key=value ...`` line."""
    message = " ".join([f"event={event}", *(f"{key}={value}" for key, value in fields.items())])
    logger.log(level, message)


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    """Set up root logging from ``PF_LOG_*``; safe to call from every entry point.

    ``PF_LOG_LEVEL`` sets the handler level, ``PF_LOG_FILE`` adds a file
    handler and ``PF_LOG_LEVELS`` (``name=LEVEL,...``) adjusts individual
    loggers. Handlers are only ever added once per destination.
    """
    level = _level_from_name(os.environ.get("PF_LOG_LEVEL", default_level))
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)

    if not any(_writes_to_stdout(handler) for handler in root.handlers):
        _install_handler(logging.StreamHandler(sys.stdout), level)

    log_file = os.environ.get("PF_LOG_FILE")
    if log_file and not any(_writes_to_file(handler, log_file) for handler in root.handlers):
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        _install_handler(logging.FileHandler(log_file), level)

    for name, override in _parse_level_overrides(os.environ.get("PF_LOG_LEVELS", "")):
        logging.getLogger(name).setLevel(override)
    return logging.getLogger(logger_name)


def _level_from_name(name: str) -> int:
    return getattr(logging, name.strip().upper(), logging.INFO)


def _install_handler(handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


def _writes_to_stdout(handler: logging.Handler) -> bool:
    return isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout


def _writes_to_file(handler: logging.Handler, path: str) -> bool:
    return isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(path)


def _parse_level_overrides(value: str) -> list[tuple[str, int]]:
    overrides = []
    for item in value.split(","):
        name, sep, level = item.partition("=")
        if sep and name.strip():
            overrides.append((name.strip(), _level_from_name(level)))
    return overrides


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_to_jsonable, sort_keys=True)


def json_loads_or(value: str | None, default: Any) -> Any:
    """Decode a stored JSON column, returning ``default`` for empty or corrupt values."""
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value) if isinstance(value, (set, frozenset)) else list(value)
    return str(value)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    """Parse a sheet cell (ISO-8601, RFC 2822 or a bare date) into aware UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    for parser in (_parse_iso_text, parsedate_to_datetime):
        try:
            return _as_utc(parser(text))
        except (TypeError, ValueError):
            continue
    return None


def _parse_iso_text(text: str) -> datetime:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def parse_iso(value: str) -> datetime:
    return _as_utc(_parse_iso_text(value))


def isoformat_utc(value: datetime) -> str:
    return _as_utc(value).isoformat()


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def utc_now_iso_offset(*, seconds: int | float) -> str:
    return (datetime.now(tz=timezone.utc) + timedelta(seconds=seconds)).isoformat()
