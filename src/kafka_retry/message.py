"""
Retry envelope and header protocol.

Every piece of retry state travels in record headers. This module owns the
header names, parses inbound headers into a typed RetryMetadata exactly once
per record, and builds the headers for outbound retry and DLQ records.
"""

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from kafka_retry.exceptions import HandlerError, RetryCommanderError
from kafka_retry.logging import get_logger, log_with_context

logger = get_logger(__name__)

# Header protocol (wire contract)
HEADER_RETRY_COUNT = "x-retry-count"
HEADER_NEXT_RETRY_TIMESTAMP = "x-next-retry-timestamp"
HEADER_ERROR_MESSAGE = "x-error-message"
HEADER_ERROR_STACK = "x-error-stack"
HEADER_ORIGINAL_TOPIC = "x-original-topic"
HEADER_ORIGINAL_PARTITION = "x-original-partition"
HEADER_ORIGINAL_OFFSET = "x-original-offset"
HEADER_LAST_RETRY = "x-last-retry"
HEADER_FAILED_AT = "x-failed-at"

MAX_ERROR_MESSAGE_LENGTH = 500
MAX_ERROR_STACK_LENGTH = 4000

RawHeaders = Optional[Sequence[Tuple[str, Optional[bytes]]]]


class RetryMetadata(BaseModel):
    """Retry progress and provenance parsed from record headers.

    Attributes:
        retry_count: Number of redelivery attempts already made
        last_retry_timestamp: Epoch ms of the previous hop (0 if none)
        next_retry_timestamp: Epoch ms when this record becomes due (0 if immediate)
        original_topic: Topic the message first appeared on
        original_partition: Partition of the first appearance
        original_offset: Offset of the first appearance
        error: Last failure message, once a failure has occurred
        error_stack: Last failure stack, once a failure has occurred
        anomalies: Header values that could not be parsed
    """

    model_config = ConfigDict(frozen=True)

    retry_count: int = Field(default=0, ge=0)
    last_retry_timestamp: int = Field(default=0, ge=0)
    next_retry_timestamp: int = Field(default=0, ge=0)
    original_topic: str
    original_partition: int
    original_offset: int
    error: Optional[str] = None
    error_stack: Optional[str] = None
    anomalies: List[str] = Field(default_factory=list)


class RetryableMessage(BaseModel):
    """Envelope handed to hooks and the DLQ handler.

    ``value`` is the decoded payload, ``raw_value`` the bytes as received
    (republished unchanged on retry and DLQ hops).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: Optional[bytes] = None
    value: Any = None
    raw_value: Optional[bytes] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    topic: str
    partition: int
    offset: int
    metadata: RetryMetadata

    @property
    def key_str(self) -> str:
        """Key decoded as UTF-8, empty string when absent."""
        if not self.key:
            return ""
        return self.key.decode("utf-8", errors="replace")


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def format_timestamp(epoch_ms: int) -> str:
    """Format epoch milliseconds as ISO-8601 UTC."""
    return (
        datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def decode_headers(raw_headers: RawHeaders) -> Dict[str, str]:
    """
    Convert aiokafka record headers to a str->str mapping.

    Later duplicates win. Values that are not valid UTF-8 are decoded with
    replacement characters rather than dropped.
    """
    headers: Dict[str, str] = {}
    for name, value in raw_headers or ():
        if value is None:
            headers[name] = ""
        elif isinstance(value, bytes):
            headers[name] = value.decode("utf-8", errors="replace")
        else:
            headers[name] = str(value)
    return headers


def encode_headers(headers: Dict[str, str]) -> List[Tuple[str, bytes]]:
    """Convert a str->str mapping to aiokafka's header list."""
    return [(name, value.encode("utf-8")) for name, value in headers.items()]


def _parse_non_negative_int(
    headers: Dict[str, str],
    name: str,
    default: int,
    anomalies: List[str],
) -> int:
    raw = headers.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        anomalies.append(name)
        log_with_context(
            logger,
            logging.WARNING,
            "Malformed retry header, using default",
            header=name,
            raw_value=raw[:100],
        )
        return default
    if value < 0:
        anomalies.append(name)
        log_with_context(
            logger,
            logging.WARNING,
            "Negative retry header, using default",
            header=name,
            raw_value=raw[:100],
        )
        return default
    return value


def parse_metadata(
    headers: Dict[str, str],
    topic: str,
    partition: int,
    offset: int,
    original_topic: Optional[str] = None,
    min_retry_count: int = 0,
) -> RetryMetadata:
    """
    Parse RetryMetadata from decoded headers. Never raises.

    Malformed numeric headers fail closed: they fall back to the default
    (or ``min_retry_count`` for the retry count) and are listed in
    ``anomalies``.

    Args:
        headers: Decoded record headers
        topic: Topic the record arrived on
        partition: Partition the record arrived on
        offset: Offset of the record
        original_topic: Fallback provenance when the header is absent
        min_retry_count: Lower bound for retry_count (retry-topic level)

    Returns:
        Parsed metadata
    """
    anomalies: List[str] = []

    retry_count = _parse_non_negative_int(headers, HEADER_RETRY_COUNT, 0, anomalies)
    retry_count = max(retry_count, min_retry_count)
    next_retry = _parse_non_negative_int(
        headers, HEADER_NEXT_RETRY_TIMESTAMP, 0, anomalies
    )
    last_retry = _parse_last_retry(headers.get(HEADER_LAST_RETRY), anomalies)
    original_partition = _parse_non_negative_int(
        headers, HEADER_ORIGINAL_PARTITION, partition, anomalies
    )
    original_offset = _parse_non_negative_int(
        headers, HEADER_ORIGINAL_OFFSET, offset, anomalies
    )

    return RetryMetadata(
        retry_count=retry_count,
        last_retry_timestamp=last_retry,
        next_retry_timestamp=next_retry,
        original_topic=headers.get(HEADER_ORIGINAL_TOPIC) or original_topic or topic,
        original_partition=original_partition,
        original_offset=original_offset,
        error=headers.get(HEADER_ERROR_MESSAGE) or None,
        error_stack=headers.get(HEADER_ERROR_STACK) or None,
        anomalies=anomalies,
    )


def _parse_last_retry(raw: Optional[str], anomalies: List[str]) -> int:
    """x-last-retry is written as ISO-8601 but epoch ms is accepted too."""
    if not raw:
        return 0
    raw = raw.strip()
    if raw.isdigit():
        return int(raw)
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        anomalies.append(HEADER_LAST_RETRY)
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return max(int(parsed.timestamp() * 1000), 0)


def describe_error(error: BaseException) -> Tuple[str, str]:
    """
    Build (message, stack) header values for a failure.

    A HandlerError is unwrapped so the headers describe what the handler
    raised; other retry-layer errors contribute their own message without
    the cause suffix. Both values are truncated to keep outbound records small.
    """
    if isinstance(error, HandlerError) and error.cause is not None:
        error = error.cause

    if isinstance(error, RetryCommanderError):
        message = error.message
    else:
        message = str(error)
    message = message or type(error).__name__
    if len(message) > MAX_ERROR_MESSAGE_LENGTH:
        message = message[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."

    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    if len(stack) > MAX_ERROR_STACK_LENGTH:
        stack = stack[: MAX_ERROR_STACK_LENGTH - 3] + "..."
    return message, stack


def _provenance_headers(message: RetryableMessage) -> Dict[str, str]:
    return {
        HEADER_ORIGINAL_TOPIC: message.metadata.original_topic,
        HEADER_ORIGINAL_PARTITION: str(message.metadata.original_partition),
        HEADER_ORIGINAL_OFFSET: str(message.metadata.original_offset),
    }


def build_retry_headers(
    message: RetryableMessage,
    next_level: int,
    next_retry_timestamp: int,
    error: BaseException,
    now: int,
) -> Dict[str, str]:
    """Headers for a record republished to retry topic ``next_level``."""
    error_message, _ = describe_error(error)
    headers = dict(message.headers)
    headers.update(_provenance_headers(message))
    headers.update(
        {
            HEADER_RETRY_COUNT: str(next_level),
            HEADER_NEXT_RETRY_TIMESTAMP: str(next_retry_timestamp),
            HEADER_ERROR_MESSAGE: error_message,
            HEADER_LAST_RETRY: format_timestamp(now),
        }
    )
    return headers


def build_dlq_headers(
    message: RetryableMessage,
    retry_count: int,
    error: BaseException,
    now: int,
) -> Dict[str, str]:
    """Headers for a record routed to the dead-letter topic."""
    error_message, error_stack = describe_error(error)
    headers = dict(message.headers)
    headers.update(_provenance_headers(message))
    headers.update(
        {
            HEADER_RETRY_COUNT: str(retry_count),
            HEADER_ERROR_MESSAGE: error_message,
            HEADER_ERROR_STACK: error_stack,
            HEADER_FAILED_AT: format_timestamp(now),
        }
    )
    return headers


def key_bytes(key: Union[bytes, str, None]) -> Optional[bytes]:
    """Normalize a record key to bytes."""
    if key is None:
        return None
    if isinstance(key, bytes):
        return key
    return str(key).encode("utf-8")


__all__ = [
    "HEADER_RETRY_COUNT",
    "HEADER_NEXT_RETRY_TIMESTAMP",
    "HEADER_ERROR_MESSAGE",
    "HEADER_ERROR_STACK",
    "HEADER_ORIGINAL_TOPIC",
    "HEADER_ORIGINAL_PARTITION",
    "HEADER_ORIGINAL_OFFSET",
    "HEADER_LAST_RETRY",
    "HEADER_FAILED_AT",
    "RetryMetadata",
    "RetryableMessage",
    "now_ms",
    "format_timestamp",
    "decode_headers",
    "encode_headers",
    "parse_metadata",
    "describe_error",
    "build_retry_headers",
    "build_dlq_headers",
    "key_bytes",
]
