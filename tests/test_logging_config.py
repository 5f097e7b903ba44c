import json
import logging

from core.logging_config import IngestionContextFilter, JsonFormatter, set_run_id, set_topic


def _format(message, **extra):
    record = logging.LogRecord("upsert", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    IngestionContextFilter().filter(record)
    return json.loads(JsonFormatter().format(record))


def test_json_line_carries_run_and_topic():
    set_run_id("abc123")
    set_topic("intro")
    try:
        line = _format("topic intro committed", inserted=3, attempt=1)
    finally:
        set_run_id(None)
        set_topic(None)

    assert line["message"] == "topic intro committed"
    assert line["run_id"] == "abc123"
    assert line["topic"] == "intro"
    assert line["inserted"] == 3
    assert line["attempt"] == 1


def test_missing_context_renders_placeholder():
    line = _format("hello")
    assert line["run_id"] == "-"
    assert line["topic"] == "-"
    assert "inserted" not in line
