import json
import logging
import sys
from pathlib import PurePosixPath

import pytest

from invoice_intake.core.config import get_settings
from invoice_intake.core.logging import JsonFormatter, configure_logging


def _record(msg: str, level: int = logging.INFO, exc_info=None) -> logging.LogRecord:  # type: ignore[no-untyped-def]
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


def test_json_formatter_emits_valid_json() -> None:
    parsed = json.loads(JsonFormatter().format(_record("test message")))

    assert parsed["message"] == "test message"
    assert parsed["level"] == "INFO"
    assert parsed["logger"] == "test"
    assert "timestamp" in parsed


def test_json_formatter_includes_extra_fields() -> None:
    record = _record("extract complete")
    record.__dict__["request_id"] = "abc123"
    record.__dict__["status_code"] = 200
    record.__dict__["providers"] = ["gemini", "groq"]

    parsed = json.loads(JsonFormatter().format(record))

    assert parsed["request_id"] == "abc123"
    assert parsed["status_code"] == 200
    assert parsed["providers"] == ["gemini", "groq"]


def test_json_formatter_renders_exception_info() -> None:
    try:
        raise ValueError("boom")
    except ValueError:
        exc_info = sys.exc_info()

    parsed = json.loads(JsonFormatter().format(_record("failed", logging.ERROR, exc_info)))

    assert "ValueError" in parsed["exception"]
    assert "boom" in parsed["exception"]
    assert "Traceback" in parsed["exception"]


def test_configure_logging_sets_log_level(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    get_settings.cache_clear()
    try:
        configure_logging(get_settings().log_level)
        assert logging.getLogger().level == logging.WARNING
    finally:
        configure_logging("INFO")


def test_configure_logging_replaces_its_own_handler_and_caps_pdfminer() -> None:
    configure_logging("DEBUG")
    configure_logging("INFO")

    handlers = [h for h in logging.getLogger().handlers if isinstance(h.formatter, JsonFormatter)]
    assert len(handlers) == 1
    assert logging.getLogger("pdfminer").level == logging.WARNING


def test_json_formatter_omits_standard_record_attributes() -> None:
    parsed = json.loads(JsonFormatter().format(_record("plain")))

    assert parsed["service"] == "invoice-intake"
    assert not {"args", "msg", "lineno", "pathname", "exc_info"} & set(parsed)


def test_json_formatter_serialises_non_json_extras_as_strings() -> None:
    record = _record("stored")
    record.__dict__["root"] = PurePosixPath("/srv/uploads")

    parsed = json.loads(JsonFormatter().format(record))

    assert parsed["root"] == "/srv/uploads"
