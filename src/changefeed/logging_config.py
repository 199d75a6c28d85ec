"""
Structured logging for changefeed.

Log records may carry ``extra`` fields describing a request or a change.
Before anything is written:
- credential fields (passwords, cookies, auth headers) are dropped
- document bodies, selectors and doc id lists are replaced by placeholders
- URLs lose their userinfo and query string

Usage:
    from changefeed.logging_config import get_logger, setup_logging

    setup_logging(json_format=False)
    logger = get_logger(__name__)
    logger.info("Checkpoint advanced", extra={"since": "12-g1AAAA"})
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

import orjson

# Key substrings that mark a credential; matching extras are dropped
BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        "password",
        "passwd",
        "secret",
        "apikey",
        "api_key",
        "auth",
        "authorization",
        "cookie",
        "credential",
        "session",
        "headers",
    }
)

# Extras carrying document content, by exact key
REDACTED_FIELDS: dict[str, str] = {
    "doc": "[DOC]",
    "document": "[DOC]",
    "body": "[BODY]",
    "selector": "[SELECTOR]",
    "doc_ids": "[DOC_IDS]",
}

MAX_LIST_ITEMS = 10
MAX_DEPTH = 3

# Third-party loggers kept at WARNING
QUIET_LOGGERS: tuple[str, ...] = ("aiohttp", "asyncio")

_URL_RE = re.compile(r"https?://[^\s\"'<>]+")

_SCRUBBERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(?:basic|bearer)\s+[\w\-.=+/]+", re.I), "[AUTH]"),
    (re.compile(r"\bAuthSession=[\w\-.=+/%]+", re.I), "[COOKIE]"),
    (re.compile(r"\b(?:api[_-]?key|apikey|password|passwd)[=:]\s*['\"]?[^\s'\"&]+['\"]?", re.I), "[SECRET]"),
)

# Attributes every LogRecord has; anything else came in through ``extra``
_STANDARD_ATTRS: frozenset[str] = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _normalize_url(url: str) -> str:
    """Path component of a URL ("/" when it has none)."""
    return urlsplit(url).path or "/"


def _url_placeholder(match: re.Match[str]) -> str:
    path = _normalize_url(match.group(0))
    return "[URL]" if path == "/" else path


def _sanitize_text(text: str) -> str:
    """Strip URLs down to their path and mask inline credentials."""
    if not text:
        return text
    text = _URL_RE.sub(_url_placeholder, text)
    for pattern, placeholder in _SCRUBBERS:
        text = pattern.sub(placeholder, text)
    return text


def _is_blocked(key: str) -> bool:
    lowered = key.lower()
    return any(word in lowered for word in BLOCKED_FIELDS)


def _clean_value(value: Any, depth: int) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _sanitize_text(value)
    if isinstance(value, dict):
        return _filter_log_record(value, _depth=depth + 1)
    if isinstance(value, (list, tuple)):
        if len(value) > MAX_LIST_ITEMS:
            return f"[list:{len(value)} items]"
        return list(value)
    return _sanitize_text(str(value))


def _filter_log_record(record: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """
    Clean a mapping of log extras.

    Credential keys are dropped, content keys redacted, ``url`` becomes
    ``path``. Nested mappings are cleaned the same way, up to MAX_DEPTH.
    """
    if _depth > MAX_DEPTH:
        return {"_truncated": "max depth exceeded"}

    cleaned: dict[str, Any] = {}
    for key, value in record.items():
        if _is_blocked(key):
            continue
        placeholder = REDACTED_FIELDS.get(key.lower())
        if placeholder is not None:
            cleaned[key] = placeholder
        elif key.lower() == "url" and isinstance(value, str):
            cleaned["path"] = _normalize_url(value)
        else:
            cleaned[key] = _clean_value(value, _depth)
    return cleaned


class _StructuredFormatter(logging.Formatter):
    """Shared extraction of message, extras and traceback."""

    def extras(self, record: logging.LogRecord) -> dict[str, Any]:
        raw = {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}
        return _filter_log_record(raw) if raw else {}

    def traceback(self, record: logging.LogRecord) -> str | None:
        if not record.exc_info:
            return None
        return _sanitize_text(self.formatException(record.exc_info))


class JsonFormatter(_StructuredFormatter):
    """One JSON object per line.

    {"ts":"2024-05-01T12:00:00.000+00:00","level":"INFO","logger":"...","msg":"...", ...extras}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": _sanitize_text(record.getMessage()),
        }
        if record.levelno >= logging.WARNING:
            entry.update(file=record.filename, line=record.lineno)

        exc = self.traceback(record)
        if exc is not None:
            entry["exc"] = exc

        entry.update(self.extras(record))
        return orjson.dumps(entry, default=str, option=orjson.OPT_NON_STR_KEYS).decode()


class SimpleFormatter(_StructuredFormatter):
    """Single-line text output for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname:8s} {record.name}: {_sanitize_text(record.getMessage())}"
        fields = self.extras(record)
        if fields:
            line += " | " + " ".join(f"{key}={value}" for key, value in fields.items())

        exc = self.traceback(record)
        return line if exc is None else f"{line}\n{exc}"


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = True,
    stream: Any = None,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> None:
    """
    Route all logging through a single sanitizing handler.

    Replaces any handlers already on the root logger.

    Args:
        level: Root log level.
        json_format: JSON lines (default) or SimpleFormatter text.
        stream: Destination (default stderr).
        quiet: Logger names capped at WARNING.
    """
    handler = logging.StreamHandler(sys.stderr if stream is None else stream)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Logger for a module (pass ``__name__``)."""
    return logging.getLogger(name)
