import json
import logging

from turnrelay.logging_config import JSONFormatter, LoggerAdapter, TextFormatter, get_logger


def _record(context=None) -> logging.LogRecord:
    record = logging.LogRecord("turnrelay.test", logging.INFO, __file__, 1, "Turn started", None, None)
    if context is not None:
        record.context = context
    return record


class TestJSONFormatter:
    def test_sender_id_is_top_level(self):
        line = JSONFormatter().format(_record({"sender_id": "5511999999999", "fragments": 2}))

        data = json.loads(line)
        assert data["sender_id"] == "5511999999999"
        assert data["context"] == {"fragments": 2}
        assert data["message"] == "Turn started"

    def test_record_context_is_not_mutated(self):
        context = {"sender_id": "5511999999999"}
        record = _record(context)

        data = json.loads(JSONFormatter().format(record))

        assert "context" not in data
        assert record.context == {"sender_id": "5511999999999"}

    def test_non_json_values_are_stringified(self):
        data = json.loads(JSONFormatter().format(_record({"error": ValueError("boom")})))

        assert data["context"]["error"] == "boom"


class TestTextFormatter:
    def test_context_rendered_after_message(self):
        line = TextFormatter().format(_record({"run_id": "run_1"}))

        assert "Turn started" in line
        assert line.endswith('{"run_id": "run_1"}')

    def test_record_without_context(self):
        line = TextFormatter().format(_record())

        assert line.endswith("turnrelay.test: Turn started")


class TestLoggerAdapter:
    def test_bound_and_call_context_are_merged(self):
        adapter = LoggerAdapter(get_logger("test"), {"sender_id": "5511999999999"})

        _, kwargs = adapter.process("msg", {"extra": {"context": {"run_id": "run_1"}}, "context": {"attempt": 2}})

        assert kwargs["extra"]["context"] == {"sender_id": "5511999999999", "run_id": "run_1", "attempt": 2}
        assert "context" not in kwargs
