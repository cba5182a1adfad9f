"""
Retry orchestrator.

Dispatches one consumed record through the retry state machine:

    RECEIVED -> CLASSIFIED (main / retry / dlq)
             -> due-time gate (retry records not yet due are DEFERRED)
             -> VALIDATED -> HANDLED (success / failure)
             -> DONE | RESCHEDULED | ROUTED_TO_DLQ

Records that arrive on a DLQ topic take a separate path: they are wrapped
in a RetryableMessage and handed to the DLQ handler.

The orchestrator never commits offsets or pauses partitions itself; the
commander does both based on the returned DispatchResult, and the delay
scheduler owns pause/resume.
"""

import inspect
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aiokafka.structs import ConsumerRecord, TopicPartition

from kafka_retry.backoff import Route, decide_route
from kafka_retry.config import ErrorHandler, RetryConfig
from kafka_retry.exceptions import (
    ConfigurationError,
    DLQHandlerError,
    HandlerError,
    PublishError,
    ValidationError,
)
from kafka_retry.hooks import HookPipeline
from kafka_retry.logging import KafkaLogContext, get_logger, log_exception, log_with_context
from kafka_retry.message import (
    RetryableMessage,
    build_dlq_headers,
    build_retry_headers,
    decode_headers,
    key_bytes,
    now_ms,
    parse_metadata,
)
from kafka_retry.metrics import (
    PrometheusRetryMetrics,
    RetryMetrics,
    SafeMetrics,
    record_dispatch_outcome,
)
from kafka_retry.producer import RetryProducer
from kafka_retry.scheduler import DelayScheduler
from kafka_retry.topology import TopicKind, TopicRole, TopicTopologyManager
from kafka_retry.validation import CallableValidator, MessageValidator, decode_payload

logger = get_logger(__name__)

MessageHandler = Callable[[Any], Any]
DLQHandler = Callable[[RetryableMessage], Any]


class DispatchOutcome(str, Enum):
    DONE = "done"
    RESCHEDULED = "rescheduled"
    ROUTED_TO_DLQ = "routed_to_dlq"
    DEFERRED = "deferred"
    FAILED = "failed"


TERMINAL_OUTCOMES = frozenset(
    {DispatchOutcome.DONE, DispatchOutcome.RESCHEDULED, DispatchOutcome.ROUTED_TO_DLQ}
)


@dataclass
class DispatchResult:
    """Result of dispatching one record.

    Attributes:
        outcome: Terminal outcome, DEFERRED, or FAILED
        classification: Role of the topic the record arrived on
        target_topic: Retry or DLQ topic the record was republished to
        error: Handler/validation failure that drove routing, or the
               dispatch error for FAILED results
    """

    outcome: DispatchOutcome
    classification: TopicKind
    target_topic: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def committable(self) -> bool:
        """Whether the record's offset may be committed."""
        return self.outcome in TERMINAL_OUTCOMES


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class RetryOrchestrator:
    """
    Per-record retry/DLQ dispatch.

    Usage:
        >>> orchestrator = RetryOrchestrator(config, ["orders"], producer, scheduler)
        >>> orchestrator.message_handler = handle_order
        >>> result = await orchestrator.dispatch(record)
        >>> if result.committable:
        ...     ...  # commit record.offset + 1
    """

    def __init__(
        self,
        config: RetryConfig,
        topics: List[str],
        producer: RetryProducer,
        scheduler: Optional[DelayScheduler] = None,
        topology: Optional[TopicTopologyManager] = None,
        clock: Callable[[], int] = now_ms,
        consumer_group: Optional[str] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Retry policy
            topics: Logical topics being consumed
            producer: Producer for outbound retry/DLQ records
            scheduler: Delay scheduler; required to defer retry records
            topology: Topology manager (created from config if None)
            clock: Epoch-millisecond clock, injectable for tests
            consumer_group: Group id, used only for log context

        Raises:
            ConfigurationError: If a DLQ name collides with another topic
        """
        self.config = config
        self.topics = list(topics)
        self.producer = producer
        self.scheduler = scheduler
        self.topology = topology or TopicTopologyManager(config)
        self.consumer_group = consumer_group
        self._clock = clock
        self._index: Dict[str, TopicRole] = self.topology.topic_index(self.topics)

        self.hooks = HookPipeline(config.hooks)
        self.metrics: RetryMetrics = SafeMetrics(config.metrics or PrometheusRetryMetrics())
        self.validator: Optional[MessageValidator] = self._coerce_validator(config.validator)

        self.message_handler: Optional[MessageHandler] = None
        self.dlq_handler: Optional[DLQHandler] = None
        self.error_handler: Optional[ErrorHandler] = None

    @staticmethod
    def _coerce_validator(validator: Any) -> Optional[MessageValidator]:
        if validator is None or isinstance(validator, MessageValidator):
            return validator
        if callable(validator):
            return CallableValidator(validator)
        raise ConfigurationError(
            f"validator must be a MessageValidator or callable, got {type(validator).__name__}"
        )

    def set_metrics(self, sink: RetryMetrics) -> None:
        self.metrics = SafeMetrics(sink)

    def subscription(self) -> List[str]:
        """Every concrete topic to consume: main, retry and DLQ topics."""
        return list(self._index)

    def classify(self, topic: str) -> TopicRole:
        """Role of a concrete topic. Unknown topics are treated as main topics."""
        return self._index.get(topic) or TopicRole(topic, TopicKind.MAIN)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(self, record: ConsumerRecord) -> DispatchResult:
        """
        Dispatch one record. Never raises for per-record failures.

        Publish and hook failures produce a FAILED result and are passed to
        the error handler; the record must not be committed. A DLQ handler
        failure is passed to the error handler and the record is DONE.

        Raises:
            ConfigurationError: If no message handler is registered
        """
        role = self.classify(record.topic)
        with KafkaLogContext(
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            key=record.key.decode("utf-8", errors="replace") if record.key else None,
            consumer_group=self.consumer_group,
        ):
            try:
                if role.kind == TopicKind.DLQ:
                    result = await self._dispatch_dlq_record(record, role)
                else:
                    result = await self._dispatch_main(record, role)
            except ConfigurationError:
                raise
            except Exception as e:
                log_exception(logger, e, "Dispatch failed, offset will not be committed")
                await self._report(e, record)
                result = DispatchResult(DispatchOutcome.FAILED, role.kind, error=e)

            record_dispatch_outcome(record.topic, result.outcome.value)
            return result

    def _build_message(self, record: ConsumerRecord, role: TopicRole) -> RetryableMessage:
        headers = decode_headers(record.headers)
        metadata = parse_metadata(
            headers,
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            original_topic=role.logical_topic,
            min_retry_count=role.level if role.kind == TopicKind.RETRY else 0,
        )
        return RetryableMessage(
            key=key_bytes(record.key),
            value=record.value,
            raw_value=record.value,
            headers=headers,
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            metadata=metadata,
        )

    async def _dispatch_main(self, record: ConsumerRecord, role: TopicRole) -> DispatchResult:
        if self.message_handler is None:
            raise ConfigurationError("No message handler registered")

        message = self._build_message(record, role)
        metadata = message.metadata
        now = self._clock()

        if role.kind == TopicKind.RETRY and metadata.next_retry_timestamp > now:
            if self.scheduler is None:
                raise ConfigurationError("A delay scheduler is required to defer retries")
            self.scheduler.hold_until(
                TopicPartition(record.topic, record.partition),
                metadata.next_retry_timestamp,
            )
            log_with_context(
                logger,
                logging.DEBUG,
                "Retry not yet due, deferring",
                retry_count=metadata.retry_count,
                next_retry_timestamp=metadata.next_retry_timestamp,
            )
            return DispatchResult(DispatchOutcome.DEFERRED, role.kind)

        if role.kind == TopicKind.RETRY and metadata.next_retry_timestamp:
            self.metrics.record_retry_latency(record.topic, now - metadata.next_retry_timestamp)

        failure: Optional[BaseException] = None
        try:
            payload = decode_payload(record.value, self.config.payload_format)
            if self.validator is not None:
                payload = await self.validator.validate(payload)
        except ValidationError as e:
            failure = e
            log_exception(
                logger,
                e,
                "Payload validation failed",
                level=logging.WARNING,
                include_traceback=False,
            )
        else:
            message = message.model_copy(update={"value": payload})
            failure = await self._invoke_handler(record, payload)

        if failure is None:
            log_with_context(
                logger,
                logging.DEBUG,
                "Message handled",
                retry_count=metadata.retry_count,
            )
            return DispatchResult(DispatchOutcome.DONE, role.kind)

        result = await self._route_failure(message, role, failure)
        await self._report(failure, record)
        return result

    async def _invoke_handler(
        self, record: ConsumerRecord, payload: Any
    ) -> Optional[BaseException]:
        start_time = time.perf_counter()
        try:
            await _maybe_await(self.message_handler(payload))
        except Exception as e:
            error = HandlerError(f"Message handler failed: {type(e).__name__}", cause=e)
            error.__cause__ = e
            log_exception(
                logger,
                e,
                "Message handler failed",
                level=logging.WARNING,
                include_traceback=False,
            )
            return error
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.metrics.record_processing_time(record.topic, duration_ms)
        return None

    async def _route_failure(
        self,
        message: RetryableMessage,
        role: TopicRole,
        error: BaseException,
    ) -> DispatchResult:
        metadata = message.metadata
        original_topic = metadata.original_topic
        topic_set = self.topology.topology_for(original_topic)
        now = self._clock()
        decision = decide_route(metadata, self.config, now)

        try:
            if decision.route == Route.RETRY:
                target = topic_set.retry_topic(decision.retry_count)
                headers = build_retry_headers(
                    message,
                    next_level=decision.retry_count,
                    next_retry_timestamp=decision.next_retry_timestamp,
                    error=error,
                    now=now,
                )
                await self.hooks.before_retry(message, handler_error=error)
                await self.producer.send(target, message.key, message.raw_value, headers)
                self.metrics.increment_retry_count(original_topic)
                log_with_context(
                    logger,
                    logging.INFO,
                    "Routed message to retry topic",
                    target_topic=target,
                    retry_count=decision.retry_count,
                    delay_ms=decision.delay_ms,
                    next_retry_timestamp=decision.next_retry_timestamp,
                )
                await self.hooks.after_retry(message, False, handler_error=error)
                return DispatchResult(DispatchOutcome.RESCHEDULED, role.kind, target, error)

            target = topic_set.dlq
            headers = build_dlq_headers(message, decision.retry_count, error, now)
            await self.hooks.before_dlq(message, handler_error=error)
            await self.producer.send(target, message.key, message.raw_value, headers)
            self.metrics.increment_dlq_count(original_topic)
            log_with_context(
                logger,
                logging.WARNING,
                "Retries exhausted, routed message to DLQ",
                target_topic=target,
                retry_count=decision.retry_count,
                original_topic=original_topic,
            )
            await self.hooks.after_dlq(message, handler_error=error)
            return DispatchResult(DispatchOutcome.ROUTED_TO_DLQ, role.kind, target, error)
        except PublishError as e:
            e.context.setdefault("handler_error", str(error))
            raise

    async def _dispatch_dlq_record(self, record: ConsumerRecord, role: TopicRole) -> DispatchResult:
        # DLQ records are never redelivered; handler failures are reported only
        try:
            await self.dispatch_dlq(record, role)
        except DLQHandlerError as e:
            log_exception(logger, e, "DLQ handler failed, record will be committed")
            await self._report(e, record)
            return DispatchResult(DispatchOutcome.DONE, role.kind, error=e)
        return DispatchResult(DispatchOutcome.DONE, role.kind)

    async def dispatch_dlq(self, record: ConsumerRecord, role: Optional[TopicRole] = None) -> None:
        """
        Hand a DLQ record to the DLQ handler.

        Without a registered DLQ handler the record is logged and skipped.

        Raises:
            DLQHandlerError: If the DLQ handler raises
        """
        role = role or self.classify(record.topic)
        message = self._build_message(record, role)
        try:
            value = decode_payload(record.value, self.config.payload_format)
        except ValidationError:
            # Keep the raw bytes; DLQ records are inspected, not reprocessed
            value = record.value
        message = message.model_copy(update={"value": value})

        if self.dlq_handler is None:
            log_with_context(
                logger,
                logging.WARNING,
                "DLQ record received but no DLQ handler is registered",
                original_topic=message.metadata.original_topic,
            )
            return

        try:
            await _maybe_await(self.dlq_handler(message))
        except Exception as e:
            raise DLQHandlerError(
                "DLQ handler failed",
                cause=e,
                context={"original_topic": message.metadata.original_topic},
            ) from e

        log_with_context(
            logger,
            logging.DEBUG,
            "DLQ record handled",
            original_topic=message.metadata.original_topic,
            retry_count=message.metadata.retry_count,
        )

    async def _report(self, error: BaseException, record: ConsumerRecord) -> None:
        """Pass an error to the error handler. Handler failures are logged only."""
        if self.error_handler is None:
            return
        try:
            await _maybe_await(self.error_handler(error, record))
        except Exception as e:
            log_exception(
                logger,
                e,
                "Error handler raised",
                level=logging.WARNING,
                reported_error=str(error)[:200],
            )


__all__ = [
    "DispatchOutcome",
    "DispatchResult",
    "RetryOrchestrator",
    "TERMINAL_OUTCOMES",
]
