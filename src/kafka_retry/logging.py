"""
Logging utilities for kafka_retry.

Provides:
- get_logger / log_with_context / log_exception helpers
- KafkaLogContext for binding topic/partition/offset to every log line
- JSON and console formatters that inject the bound context
- setup_logging for applications that want a ready-made configuration
"""

import io
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Noisy loggers to suppress
NOISY_LOGGERS = [
    "aiokafka",
    "kafka",
]

_kafka_context: ContextVar[Dict[str, Any]] = ContextVar("kafka_retry_log_context", default={})


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_log_context() -> Dict[str, Any]:
    """Return the Kafka context bound to the current task."""
    return dict(_kafka_context.get())


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (retry_count, target_topic, etc.)

    Example:
        log_with_context(
            logger, logging.INFO, "Routed message to retry topic",
            target_topic="orders.retry.1",
            retry_count=1,
        )
    """
    logger.log(level, msg, extra=kwargs)


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Automatically extracts error_category from RetryCommanderError subclasses.

    Args:
        logger: Logger instance
        exc: Exception to log
        msg: Context message
        level: Log level (default: ERROR)
        include_traceback: Include full traceback (default: True)
        **kwargs: Additional context fields
    """
    error_category = kwargs.get("error_category")
    if error_category is None and hasattr(exc, "category"):
        cat = exc.category
        kwargs["error_category"] = cat.value if hasattr(cat, "value") else str(cat)

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg
    kwargs.setdefault("error_type", type(exc).__name__)

    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=kwargs)
    else:
        logger.log(level, msg, extra=kwargs)


class KafkaLogContext:
    """
    Context manager binding Kafka record coordinates to all logs in scope.

    Uses contextvars so the binding follows the current asyncio task and
    does not leak between partitions dispatched concurrently.

    Example:
        with KafkaLogContext(topic=record.topic, partition=record.partition,
                             offset=record.offset):
            logger.info("Processing message")
    """

    def __init__(self, **fields: Any):
        self._fields = {k: v for k, v in fields.items() if v is not None}
        self._token = None

    def __enter__(self) -> "KafkaLogContext":
        merged = dict(_kafka_context.get())
        merged.update(self._fields)
        self._token = _kafka_context.set(merged)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._token is not None:
            _kafka_context.reset(self._token)
            self._token = None


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with Kafka context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        "retry_count",
        "max_retries",
        "next_retry_timestamp",
        "delay_ms",
        "target_topic",
        "original_topic",
        "outcome",
        "classification",
        "duration_ms",
        "error_category",
        "error_message",
        "error_type",
        "hook",
        "stage",
        "topics",
        "group_id",
        "bootstrap_servers",
        "state",
        "anomaly",
        "header",
        "raw_value",
        "ready_at",
        "created_topics",
        "existing_topics",
        "failed_topics",
    ]

    CONTEXT_FIELDS = ["topic", "partition", "offset", "key", "consumer_group"]

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        ctx = get_log_context()
        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is None:
                value = ctx.get(field)
            if value is not None:
                log_entry[field] = value

        # Add source location for DEBUG/ERROR
        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console formatter. Includes Kafka context when bound."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
            record.name,
        ]
        if "topic" in ctx:
            parts.append(f"[{ctx['topic']}:{ctx.get('partition', '?')}@{ctx.get('offset', '?')}]")

        line = f"{' - '.join(parts)} - {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    level: int = logging.INFO,
    json_format: bool = True,
    suppress_noisy: bool = True,
    stream: Optional[Any] = None,
) -> logging.Logger:
    """
    Configure the root logger with a single stream handler.

    Args:
        level: Root log level (default: INFO)
        json_format: Use JSON output (default: True), console format otherwise
        suppress_noisy: Quiet down Kafka client loggers
        stream: Output stream (default: stdout)

    Returns:
        The package logger
    """
    if stream is None:
        if sys.platform == "win32":
            stream = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
        else:
            stream = sys.stdout

    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    # Remove existing handlers to avoid duplicates on re-init
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = logging.getLogger("kafka_retry")
    logger.debug(f"Logging initialized: json={json_format}")
    return logger


__all__ = [
    "get_logger",
    "get_log_context",
    "log_with_context",
    "log_exception",
    "KafkaLogContext",
    "JSONFormatter",
    "ConsoleFormatter",
    "setup_logging",
]
