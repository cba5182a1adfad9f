"""Tests for logging helpers and formatters."""

import io
import json
import logging

import pytest

from kafka_retry.exceptions import ConfigurationError
from kafka_retry.logging import (
    ConsoleFormatter,
    JSONFormatter,
    KafkaLogContext,
    get_log_context,
    log_exception,
    setup_logging,
)


def make_log_record(msg="hello", level=logging.INFO, **extra):
    record = logging.LogRecord("kafka_retry.test", level, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestKafkaLogContext:
    def test_binds_and_restores(self):
        assert get_log_context() == {}
        with KafkaLogContext(topic="orders", partition=1, offset=None):
            assert get_log_context() == {"topic": "orders", "partition": 1}
            with KafkaLogContext(offset=42):
                assert get_log_context()["offset"] == 42
            assert "offset" not in get_log_context()
        assert get_log_context() == {}


class TestJSONFormatter:
    def test_includes_context_and_extras(self):
        formatter = JSONFormatter()
        with KafkaLogContext(topic="orders", partition=0, offset=7):
            line = formatter.format(
                make_log_record(target_topic="orders.retry.1", retry_count=1)
            )

        entry = json.loads(line)
        assert entry["msg"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["topic"] == "orders"
        assert entry["offset"] == 7
        assert entry["target_topic"] == "orders.retry.1"
        assert entry["retry_count"] == 1
        assert "file" not in entry

    def test_record_fields_override_context(self):
        formatter = JSONFormatter()
        with KafkaLogContext(topic="orders"):
            entry = json.loads(formatter.format(make_log_record(topic="orders.dlq")))
        assert entry["topic"] == "orders.dlq"


class TestConsoleFormatter:
    def test_context_prefix(self):
        with KafkaLogContext(topic="orders", partition=2, offset=5):
            line = ConsoleFormatter().format(make_log_record())
        assert "[orders:2@5]" in line
        assert line.endswith("hello")


class TestLogException:
    def test_category_and_truncation(self, caplog):
        logger = logging.getLogger("kafka_retry.test")
        error = ConfigurationError("x" * 600)

        with caplog.at_level(logging.ERROR):
            log_exception(logger, error, "Bad config", include_traceback=False)

        record = caplog.records[-1]
        assert record.error_category == "config"
        assert record.error_type == "ConfigurationError"
        assert len(record.error_message) == 503
        assert record.exc_info is None


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_output(self):
        stream = io.StringIO()
        setup_logging(level=logging.INFO, stream=stream)

        logging.getLogger("kafka_retry.test").info("ready")

        assert json.loads(stream.getvalue().strip())["msg"] == "ready"
        assert logging.getLogger("aiokafka").level == logging.WARNING
