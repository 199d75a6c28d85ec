"""Tests for logging configuration.

Verifies that logging:
1. Drops credential fields (BLOCKED_FIELDS)
2. Redacts document content
3. Reduces URLs to their path
4. Produces valid JSON output
"""

from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterator

import pytest

from changefeed.logging_config import (
    BLOCKED_FIELDS,
    JsonFormatter,
    SimpleFormatter,
    _filter_log_record,
    _normalize_url,
    _sanitize_text,
    get_logger,
    setup_logging,
)


@pytest.fixture()
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(msg: str = "test", level: int = logging.INFO, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestBlockedFields:
    """Credential fields are dropped."""

    def test_blocked_fields(self) -> None:
        assert "password" in BLOCKED_FIELDS
        assert "cookie" in BLOCKED_FIELDS
        assert "authorization" in BLOCKED_FIELDS

    def test_filter_removes_credentials(self) -> None:
        filtered = _filter_log_record(
            {"password": "hunter2", "apikey": "k", "Authorization": "Basic x", "db": "orders"}
        )
        assert filtered == {"db": "orders"}

    def test_filter_removes_partial_matches(self) -> None:
        filtered = _filter_log_record({"session_id": "s", "set_cookie_header": "c", "since": "5-x"})
        assert filtered == {"since": "5-x"}


class TestRedaction:
    """Document content never reaches the logs."""

    def test_document_fields_redacted(self) -> None:
        filtered = _filter_log_record(
            {"doc": {"name": "alice"}, "selector": {"type": "user"}, "doc_ids": ["a"], "body": "{}"}
        )
        assert filtered == {
            "doc": "[DOC]",
            "selector": "[SELECTOR]",
            "doc_ids": "[DOC_IDS]",
            "body": "[BODY]",
        }

    def test_url_reduced_to_path(self) -> None:
        filtered = _filter_log_record({"url": "http://admin:pw@db:5984/orders/_changes?since=0"})
        assert filtered == {"path": "/orders/_changes"}

    def test_normalize_url(self) -> None:
        assert _normalize_url("https://db.example/orders?feed=longpoll") == "/orders"
        assert _normalize_url("http://db.example") == "/"

    def test_long_list_summarized(self) -> None:
        filtered = _filter_log_record({"ids": list(range(20)), "few": [1, 2]})
        assert filtered["ids"] == "[list:20 items]"
        assert filtered["few"] == [1, 2]

    def test_nested_dict_filtered(self) -> None:
        filtered = _filter_log_record({"client": {"base": "x", "password": "p"}})
        assert filtered == {"client": {"base": "x"}}


class TestSanitizeText:
    """Free-text sanitization."""

    def test_url_userinfo_and_query_removed(self) -> None:
        text = _sanitize_text("GET http://admin:secretpw@db:5984/orders/_changes?since=0 failed")
        assert "secretpw" not in text
        assert "since=0" not in text
        assert "/orders/_changes" in text

    def test_bare_host_replaced(self) -> None:
        assert _sanitize_text("connect to http://admin:pw@db:5984") == "connect to [URL]"

    def test_authorization_values(self) -> None:
        assert "abc123" not in _sanitize_text("header Basic abc123")
        assert "tok.en" not in _sanitize_text("Bearer tok.en")

    def test_session_cookie(self) -> None:
        assert _sanitize_text("cookie AuthSession=YWRtaW46") == "cookie [COOKIE]"

    def test_password_assignment(self) -> None:
        assert "hunter2" not in _sanitize_text("password=hunter2")

    def test_safe_text_unchanged(self) -> None:
        assert _sanitize_text("Fetched 10 changes") == "Fetched 10 changes"
        assert _sanitize_text("") == ""


class TestFormatters:
    """JSON and plain formatters."""

    def test_json_fields(self) -> None:
        parsed = json.loads(JsonFormatter().format(_record("hello", since="5-x", emitted=3)))
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test"
        assert parsed["msg"] == "hello"
        assert parsed["since"] == "5-x"
        assert parsed["emitted"] == 3
        assert "ts" in parsed
        assert "file" not in parsed

    def test_json_warning_has_location(self) -> None:
        parsed = json.loads(JsonFormatter().format(_record(level=logging.WARNING)))
        assert parsed["file"] == "test.py"
        assert parsed["line"] == 10

    def test_json_extras_filtered(self) -> None:
        parsed = json.loads(JsonFormatter().format(_record(password="x", doc={"a": 1})))
        assert "password" not in parsed
        assert parsed["doc"] == "[DOC]"

    def test_simple_format(self) -> None:
        output = SimpleFormatter().format(_record("stopped", reason="caught-up"))
        assert output.startswith("INFO")
        assert "stopped" in output
        assert "reason=caught-up" in output


class TestSetupLogging:
    """setup_logging wiring."""

    def test_json_output(self, restore_root_logger: None) -> None:
        stream = io.StringIO()
        setup_logging(json_format=True, stream=stream)

        get_logger("test_json").info("message", extra={"db": "orders", "cookie": "AuthSession=x"})

        parsed = json.loads(stream.getvalue().strip())
        assert parsed["msg"] == "message"
        assert parsed["db"] == "orders"
        assert "cookie" not in parsed

    def test_level(self, restore_root_logger: None) -> None:
        stream = io.StringIO()
        setup_logging(level=logging.WARNING, json_format=False, stream=stream)

        logger = get_logger("test_level")
        logger.info("info message")
        logger.warning("warning message")

        output = stream.getvalue()
        assert "info message" not in output
        assert "warning message" in output

    def test_exception_sanitized(self, restore_root_logger: None) -> None:
        stream = io.StringIO()
        setup_logging(json_format=True, stream=stream)

        try:
            raise ConnectionError("cannot reach http://admin:pw123@db:5984/orders")
        except ConnectionError:
            get_logger("test_exc").exception("failed")

        assert "pw123" not in stream.getvalue()
