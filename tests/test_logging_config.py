import json
import logging

from core.logging_config import JsonFormatter
from core.request_context import set_request_id


def _record(**extra):
    record = logging.LogRecord("chat_service", logging.INFO, __file__, 1, "Calling %s", ("Gemini",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_envelope_and_request_id():
    set_request_id("req-123")

    entry = json.loads(JsonFormatter().format(_record()))

    assert entry["message"] == "Calling Gemini"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "chat_service"
    assert entry["request_id"] == "req-123"
    assert "lineno" not in entry and "args" not in entry


def test_extra_fields_are_copied_and_stringified():
    entry = json.loads(JsonFormatter().format(_record(key="AIza…1234", history_turns=2, error=ValueError("x"))))

    assert entry["key"] == "AIza…1234"
    assert entry["history_turns"] == 2
    assert entry["error"] == "x"
