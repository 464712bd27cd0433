"""Tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from api.middleware.json_formatter import JSONFormatter


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(msg: str = "message", level: int = logging.INFO, name: str = "test", exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    def test_basic_fields(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("test message", name="api.access")))

        assert data["level"] == "INFO"
        assert data["logger"] == "api.access"
        assert data["message"] == "test message"
        assert "+00:00" in data["timestamp"]

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record("line one\nline two", logging.WARNING))

    def test_request_context_included(self, formatter: JSONFormatter) -> None:
        record = _record("request completed", name="api.access")
        record.request = {  # type: ignore[attr-defined]
            "method": "POST",
            "path": "/api/v1/payments/approve",
            "status_code": 200,
            "correlation_id": "corr-1",
            "user_id": "user-1",
        }
        data = json.loads(formatter.format(record))

        assert data["request"]["path"] == "/api/v1/payments/approve"
        assert data["request"]["user_id"] == "user-1"

    def test_billing_extras_included(self, formatter: JSONFormatter) -> None:
        record = _record("payment failed")
        record.order_id = "CREDIT_1_ABC"  # type: ignore[attr-defined]
        record.subscription_id = "sub-1"  # type: ignore[attr-defined]
        data = json.loads(formatter.format(record))

        assert data["order_id"] == "CREDIT_1_ABC"
        assert data["subscription_id"] == "sub-1"
        assert "user_id" not in data

    def test_no_request_context_omitted(self, formatter: JSONFormatter) -> None:
        assert "request" not in json.loads(formatter.format(_record()))

    def test_exception_info_included(self, formatter: JSONFormatter) -> None:
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(formatter.format(_record("error occurred", logging.ERROR, exc_info=exc_info)))

        assert data["level"] == "ERROR"
        assert "ValueError: test error" in data["exc_info"]
        assert "Traceback" in data["exc_info"]

    def test_non_ascii_preserved(self, formatter: JSONFormatter) -> None:
        assert "세금계산서" in formatter.format(_record("세금계산서 발행"))
