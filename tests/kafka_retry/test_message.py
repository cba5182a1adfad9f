"""Tests for the retry header protocol."""

import logging

from kafka_retry.exceptions import HandlerError, ValidationError
from kafka_retry.message import (
    HEADER_ERROR_MESSAGE,
    HEADER_ERROR_STACK,
    HEADER_FAILED_AT,
    HEADER_LAST_RETRY,
    HEADER_NEXT_RETRY_TIMESTAMP,
    HEADER_ORIGINAL_OFFSET,
    HEADER_ORIGINAL_PARTITION,
    HEADER_ORIGINAL_TOPIC,
    HEADER_RETRY_COUNT,
    MAX_ERROR_MESSAGE_LENGTH,
    RetryableMessage,
    build_dlq_headers,
    build_retry_headers,
    decode_headers,
    describe_error,
    encode_headers,
    format_timestamp,
    parse_metadata,
)

NOW = 1_700_000_000_000


def make_message(headers=None, topic="orders", offset=42):
    headers = headers or {}
    return RetryableMessage(
        key=b"k-1",
        value={"id": 1},
        raw_value=b'{"id": 1}',
        headers=headers,
        topic=topic,
        partition=3,
        offset=offset,
        metadata=parse_metadata(headers, topic, 3, offset),
    )


class TestHeaderCodec:
    def test_decode_headers(self):
        headers = decode_headers([("a", b"1"), ("b", None), ("c", b"\xff"), ("a", b"2")])
        assert headers["a"] == "2"
        assert headers["b"] == ""
        assert headers["c"] == "�"

    def test_decode_none(self):
        assert decode_headers(None) == {}

    def test_encode_headers(self):
        assert encode_headers({"x": "1"}) == [("x", b"1")]

    def test_format_timestamp(self):
        assert format_timestamp(0) == "1970-01-01T00:00:00.000Z"


class TestParseMetadata:
    """Tests for fail-closed metadata parsing."""

    def test_fresh_record_defaults(self):
        metadata = parse_metadata({}, "orders", 1, 10)
        assert metadata.retry_count == 0
        assert metadata.next_retry_timestamp == 0
        assert metadata.original_topic == "orders"
        assert metadata.original_partition == 1
        assert metadata.original_offset == 10
        assert metadata.error is None
        assert metadata.anomalies == []

    def test_parses_headers(self):
        headers = {
            HEADER_RETRY_COUNT: "2",
            HEADER_NEXT_RETRY_TIMESTAMP: str(NOW),
            HEADER_ORIGINAL_TOPIC: "orders",
            HEADER_ORIGINAL_PARTITION: "4",
            HEADER_ORIGINAL_OFFSET: "99",
            HEADER_ERROR_MESSAGE: "boom",
            HEADER_LAST_RETRY: format_timestamp(NOW - 1000),
        }
        metadata = parse_metadata(headers, "orders.retry.2", 0, 5)
        assert metadata.retry_count == 2
        assert metadata.next_retry_timestamp == NOW
        assert metadata.original_topic == "orders"
        assert metadata.original_partition == 4
        assert metadata.original_offset == 99
        assert metadata.error == "boom"
        assert metadata.last_retry_timestamp == NOW - 1000

    def test_malformed_retry_count_fails_closed(self, caplog):
        with caplog.at_level(logging.WARNING):
            metadata = parse_metadata({HEADER_RETRY_COUNT: "abc"}, "orders", 0, 0)
        assert metadata.retry_count == 0
        assert HEADER_RETRY_COUNT in metadata.anomalies
        assert "Malformed retry header" in caplog.text

    def test_negative_values_rejected(self):
        metadata = parse_metadata({HEADER_NEXT_RETRY_TIMESTAMP: "-5"}, "orders", 0, 0)
        assert metadata.next_retry_timestamp == 0
        assert metadata.anomalies == [HEADER_NEXT_RETRY_TIMESTAMP]

    def test_min_retry_count_from_topic_level(self):
        metadata = parse_metadata({}, "orders.retry.2", 0, 0, min_retry_count=2)
        assert metadata.retry_count == 2

    def test_header_above_min_kept(self):
        metadata = parse_metadata(
            {HEADER_RETRY_COUNT: "3"}, "orders.retry.2", 0, 0, min_retry_count=2
        )
        assert metadata.retry_count == 3

    def test_original_topic_fallback(self):
        metadata = parse_metadata({}, "orders.retry.1", 0, 0, original_topic="orders")
        assert metadata.original_topic == "orders"

    def test_last_retry_epoch_accepted(self):
        metadata = parse_metadata({HEADER_LAST_RETRY: str(NOW)}, "orders", 0, 0)
        assert metadata.last_retry_timestamp == NOW

    def test_unparsable_last_retry(self):
        metadata = parse_metadata({HEADER_LAST_RETRY: "yesterday"}, "orders", 0, 0)
        assert metadata.last_retry_timestamp == 0
        assert HEADER_LAST_RETRY in metadata.anomalies


class TestBuildHeaders:
    def test_retry_headers(self):
        message = make_message({"trace-id": "t-1"})
        headers = build_retry_headers(
            message,
            next_level=1,
            next_retry_timestamp=NOW + 1000,
            error=RuntimeError("handler down"),
            now=NOW,
        )
        assert headers["trace-id"] == "t-1"
        assert headers[HEADER_RETRY_COUNT] == "1"
        assert headers[HEADER_NEXT_RETRY_TIMESTAMP] == str(NOW + 1000)
        assert headers[HEADER_ERROR_MESSAGE] == "handler down"
        assert headers[HEADER_ORIGINAL_TOPIC] == "orders"
        assert headers[HEADER_ORIGINAL_PARTITION] == "3"
        assert headers[HEADER_ORIGINAL_OFFSET] == "42"
        assert headers[HEADER_LAST_RETRY] == format_timestamp(NOW)
        assert HEADER_ERROR_STACK not in headers

    def test_provenance_preserved_across_hops(self):
        message = make_message(
            {
                HEADER_ORIGINAL_TOPIC: "orders",
                HEADER_ORIGINAL_PARTITION: "0",
                HEADER_ORIGINAL_OFFSET: "7",
                HEADER_RETRY_COUNT: "1",
            },
            topic="orders.retry.1",
            offset=500,
        )
        headers = build_retry_headers(message, 2, NOW, RuntimeError("x"), NOW)
        assert headers[HEADER_ORIGINAL_OFFSET] == "7"
        assert headers[HEADER_ORIGINAL_PARTITION] == "0"

    def test_dlq_headers(self):
        message = make_message({HEADER_RETRY_COUNT: "3"})
        try:
            raise ValueError("bad payload")
        except ValueError as e:
            headers = build_dlq_headers(message, 3, e, NOW)

        assert headers[HEADER_RETRY_COUNT] == "3"
        assert headers[HEADER_ERROR_MESSAGE] == "bad payload"
        assert "ValueError: bad payload" in headers[HEADER_ERROR_STACK]
        assert headers[HEADER_FAILED_AT] == format_timestamp(NOW)
        assert headers[HEADER_ORIGINAL_TOPIC] == "orders"

    def test_describe_error_truncates(self):
        message, _ = describe_error(RuntimeError("x" * 2000))
        assert len(message) == MAX_ERROR_MESSAGE_LENGTH
        assert message.endswith("...")

    def test_describe_error_empty_message(self):
        message, _ = describe_error(RuntimeError())
        assert message == "RuntimeError"

    def test_describe_error_unwraps_handler_error(self):
        try:
            raise RuntimeError("db unavailable")
        except RuntimeError as e:
            error = HandlerError("Message handler failed: RuntimeError", cause=e)

        message, stack = describe_error(error)

        assert message == "db unavailable"
        assert "RuntimeError: db unavailable" in stack
        assert "HandlerError" not in stack

    def test_describe_error_drops_cause_suffix(self):
        error = ValidationError("Payload is not valid JSON", cause=ValueError("line 1"))
        message, _ = describe_error(error)
        assert message == "Payload is not valid JSON"

    def test_key_str(self):
        assert make_message().key_str == "k-1"
