"""
KafkaRetryCommander: public entry point of the retry layer.

Owns the Kafka clients and the lifecycle:

    CREATED -> CONNECTED -> RUNNING -> STOPPING -> STOPPED

connect() starts the producer and admin client, provisions the topic set of
every configured topic and subscribes the consumer to all main, retry and
DLQ topics. start() runs the consume loop until shutdown(). Handlers, hooks
and metrics are registered before start().
"""

import asyncio
import logging
from contextvars import ContextVar
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from aiokafka import AIOKafkaConsumer
from aiokafka.abc import ConsumerRebalanceListener
from aiokafka.admin import AIOKafkaAdminClient
from aiokafka.structs import ConsumerRecord, TopicPartition

from kafka_retry.config import ErrorHandler, RetryCommanderConfig
from kafka_retry.exceptions import ConfigurationError, LifecycleError
from kafka_retry.hooks import RetryHook
from kafka_retry.logging import get_logger, log_exception, log_with_context
from kafka_retry.message import now_ms
from kafka_retry.metrics import RetryMetrics, update_connection_status, update_held_partitions
from kafka_retry.orchestrator import DispatchOutcome, DLQHandler, MessageHandler, RetryOrchestrator
from kafka_retry.producer import RetryProducer
from kafka_retry.scheduler import DelayScheduler, PartitionController
from kafka_retry.topology import ProvisioningReport, TopicTopologyManager

logger = get_logger(__name__)

# Failed records are redelivered after this pause
FAILED_REDELIVERY_DELAY_MS = 1000

# Commander whose consume loop is running in the current task (and its gather children)
_active_loop: ContextVar[Optional["KafkaRetryCommander"]] = ContextVar(
    "kafka_retry_active_loop", default=None
)


class LifecycleState(str, Enum):
    CREATED = "created"
    CONNECTED = "connected"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ConsumerPartitionController(PartitionController):
    """PartitionController backed by an AIOKafkaConsumer."""

    def __init__(self, consumer: AIOKafkaConsumer):
        self._consumer = consumer

    def pause(self, tp: TopicPartition) -> None:
        self._consumer.pause(tp)

    def resume(self, tp: TopicPartition) -> None:
        self._consumer.resume(tp)


class _RebalanceListener(ConsumerRebalanceListener):
    """Drops scheduler holds for partitions this member no longer owns."""

    def __init__(self, commander: "KafkaRetryCommander"):
        self._commander = commander

    async def on_partitions_revoked(self, revoked) -> None:
        scheduler = self._commander.scheduler
        if scheduler is None:
            return
        for tp in revoked:
            scheduler.release(tp)

    async def on_partitions_assigned(self, assigned) -> None:
        log_with_context(
            logger,
            logging.INFO,
            "Partitions assigned",
            consumer_group=self._commander.config.group_id,
            partition_count=len(assigned),
        )


class KafkaRetryCommander:
    """
    Retry/DLQ orchestration on top of an aiokafka consumer group.

    Usage:
        >>> commander = KafkaRetryCommander(RetryCommanderConfig.load("retry.yaml"))
        >>> commander.set_message_handler(handle_order)
        >>> commander.set_dlq_handler(handle_dead_order)
        >>> async with commander:
        ...     await commander.start()  # runs until shutdown()
    """

    def __init__(
        self,
        config: RetryCommanderConfig,
        producer: Optional[RetryProducer] = None,
        admin: Optional[AIOKafkaAdminClient] = None,
        consumer: Optional[AIOKafkaConsumer] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize commander. No connections are made until connect().

        Args:
            config: Commander configuration
            producer: Retry producer (created from config.kafka if None)
            admin: Admin client, not yet started (created on connect if None)
            consumer: Consumer, not yet started or subscribed (created on connect if None)
            clock: Epoch-millisecond clock, injectable for tests

        Raises:
            ConfigurationError: If topic names collide
        """
        self.config = config
        self._clock = clock
        self._admin = admin
        self._consumer = consumer
        self._producer = producer or RetryProducer(config.kafka)
        self._scheduler: Optional[DelayScheduler] = None
        self._consumer_started = False

        self.topology = TopicTopologyManager(config.retry)
        self.orchestrator = RetryOrchestrator(
            config.retry,
            config.topics,
            self._producer,
            topology=self.topology,
            clock=clock,
            consumer_group=config.group_id,
        )
        self.orchestrator.error_handler = config.error_handler

        self._state = LifecycleState.CREATED
        self._lock = asyncio.Lock()
        self._shutdown_task: Optional[asyncio.Task] = None
        self._loop_stopped = asyncio.Event()
        self._loop_stopped.set()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == LifecycleState.RUNNING

    @property
    def scheduler(self) -> Optional[DelayScheduler]:
        return self._scheduler

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def _ensure_configurable(self, what: str) -> None:
        if self._state not in (LifecycleState.CREATED, LifecycleState.CONNECTED):
            raise LifecycleError(
                f"Cannot {what} once the commander is {self._state.value}",
                context={"state": self._state.value},
            )

    def set_message_handler(self, handler: MessageHandler) -> None:
        """Handler receiving each decoded payload. Sync or async."""
        self._ensure_configurable("set the message handler")
        self.orchestrator.message_handler = handler

    def set_dlq_handler(self, handler: DLQHandler) -> None:
        """Handler receiving a RetryableMessage for each DLQ record. Sync or async."""
        self._ensure_configurable("set the DLQ handler")
        self.orchestrator.dlq_handler = handler

    def add_hook(self, hook: RetryHook) -> None:
        self._ensure_configurable("add hooks")
        self.orchestrator.hooks.add(hook)

    def set_metrics(self, sink: RetryMetrics) -> None:
        self._ensure_configurable("set metrics")
        self.orchestrator.set_metrics(sink)

    def set_error_handler(self, handler: ErrorHandler) -> None:
        """Callback ``(error, record)`` for every dispatch error. Sync or async."""
        self._ensure_configurable("set the error handler")
        self.orchestrator.error_handler = handler

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Start clients, provision topics and subscribe the consumer.

        Raises:
            LifecycleError: If not in CREATED state
            ProvisioningError: If topic provisioning fails
        """
        async with self._lock:
            if self._state != LifecycleState.CREATED:
                raise LifecycleError(f"Cannot connect from state {self._state.value}")

            log_with_context(
                logger,
                logging.INFO,
                "Connecting retry commander",
                topics=self.config.topics,
                consumer_group=self.config.group_id,
                bootstrap_servers=self.config.kafka.bootstrap_servers,
            )

            try:
                await self._producer.start()
                await self._start_admin()
                for topic in self.config.topics:
                    await self.topology.provision(self.topology.topology_for(topic))
                await self._start_consumer()
            except Exception as e:
                log_exception(logger, e, "Failed to connect retry commander")
                await self._close_clients()
                self._state = LifecycleState.STOPPED
                raise

            self._state = LifecycleState.CONNECTED
            logger.info("Retry commander connected")

    async def _start_admin(self) -> None:
        if self._admin is None:
            self._admin = AIOKafkaAdminClient(**self.config.kafka.admin_kwargs())
        await self._admin.start()
        self.topology.admin = self._admin
        update_connection_status("admin", connected=True)

    async def _start_consumer(self) -> None:
        if self._consumer is None:
            self._consumer = AIOKafkaConsumer(
                **self.config.kafka.consumer_kwargs(self.config.group_id)
            )
        subscription = self.orchestrator.subscription()
        self._consumer.subscribe(topics=subscription, listener=_RebalanceListener(self))
        await self._consumer.start()
        self._consumer_started = True

        self._scheduler = DelayScheduler(
            ConsumerPartitionController(self._consumer), clock=self._clock
        )
        self.orchestrator.scheduler = self._scheduler
        update_connection_status("consumer", connected=True)

        log_with_context(
            logger,
            logging.INFO,
            "Consumer subscribed",
            topics=subscription,
            consumer_group=self.config.group_id,
        )

    async def start(self) -> None:
        """
        Run the consume loop until shutdown() is called.

        Raises:
            LifecycleError: If connect() has not completed
            ConfigurationError: If no message handler is registered
        """
        async with self._lock:
            if self._state != LifecycleState.CONNECTED:
                raise LifecycleError(f"Cannot start from state {self._state.value}")
            if self.orchestrator.message_handler is None:
                raise ConfigurationError("A message handler must be set before start()")
            self._state = LifecycleState.RUNNING
            self._loop_stopped.clear()

        token = _active_loop.set(self)
        try:
            await self._consume_loop()
        except asyncio.CancelledError:
            logger.info("Consume loop cancelled, shutting down")
            raise
        except Exception as e:
            log_exception(logger, e, "Consume loop terminated with error")
            raise
        finally:
            self._loop_stopped.set()
            _active_loop.reset(token)
            if self._shutdown_task is not None:
                await asyncio.shield(self._shutdown_task)

    async def _consume_loop(self) -> None:
        log_with_context(
            logger,
            logging.INFO,
            "Starting retry consume loop",
            consumer_group=self.config.group_id,
        )

        while self._state == LifecycleState.RUNNING:
            if not self._consumer.assignment():
                # getmany() can block through a rebalance regardless of timeout_ms
                await asyncio.sleep(0.5)
                continue

            try:
                data = await self._consumer.getmany(timeout_ms=self.config.kafka.fetch_timeout_ms)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_exception(logger, e, "Error fetching records")
                await asyncio.sleep(1)
                continue

            if data:
                await self.process_batch(data)

    async def process_batch(self, data: Dict[TopicPartition, List[ConsumerRecord]]) -> None:
        """
        Dispatch one getmany() result and commit what reached a terminal outcome.

        Partitions are dispatched concurrently, records within a partition
        sequentially.
        """
        results: List[Tuple[TopicPartition, Optional[int]]] = await asyncio.gather(
            *(self._dispatch_partition(tp, records) for tp, records in data.items())
        )
        offsets = {tp: offset for tp, offset in results if offset is not None}
        if offsets:
            await self._commit(offsets)
        if self._scheduler is not None:
            update_held_partitions(self.config.group_id, len(self._scheduler.pending))

    async def _dispatch_partition(
        self, tp: TopicPartition, records: List[ConsumerRecord]
    ) -> Tuple[TopicPartition, Optional[int]]:
        """Returns the offset to commit for ``tp``, or None."""
        commit_offset: Optional[int] = None
        for record in records:
            if self._state != LifecycleState.RUNNING:
                break

            result = await self.orchestrator.dispatch(record)

            if result.committable:
                commit_offset = record.offset + 1
                continue

            # Rewind so the record is fetched again once the partition resumes
            try:
                self._consumer.seek(tp, record.offset)
            except Exception as e:
                # Partition revoked mid-batch; the new owner resumes from the committed offset
                log_exception(
                    logger,
                    e,
                    "Failed to seek partition",
                    level=logging.WARNING,
                    topic=tp.topic,
                    partition=tp.partition,
                    offset=record.offset,
                )
                break
            if result.outcome == DispatchOutcome.FAILED and self._scheduler is not None:
                self._scheduler.hold_until(tp, self._clock() + FAILED_REDELIVERY_DELAY_MS)
            break
        return tp, commit_offset

    async def _commit(self, offsets: Dict[TopicPartition, int]) -> None:
        try:
            await self._consumer.commit(offsets)
        except Exception as e:
            # Records will be redelivered; at-least-once
            log_exception(
                logger,
                e,
                "Offset commit failed",
                level=logging.WARNING,
                partitions=[f"{tp.topic}:{tp.partition}" for tp in offsets],
            )

    async def shutdown(self) -> None:
        """
        Stop the consume loop and close all clients.

        Idempotent; concurrent callers all wait for the same shutdown. When
        called from a handler the shutdown completes once the current batch
        is done, before start() returns.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        if _active_loop.get() is self:
            return
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        async with self._lock:
            previous = self._state
            if previous == LifecycleState.STOPPED:
                return
            self._state = LifecycleState.STOPPING

        log_with_context(logger, logging.INFO, "Shutting down retry commander", state=previous.value)

        if self._scheduler is not None:
            await self._scheduler.cancel()

        if previous == LifecycleState.RUNNING:
            try:
                await asyncio.wait_for(
                    self._loop_stopped.wait(),
                    timeout=self.config.kafka.request_timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                logger.warning("Consume loop did not stop in time, closing clients anyway")

        await self._close_clients()
        self._state = LifecycleState.STOPPED
        logger.info("Retry commander stopped")

    async def _close_clients(self) -> None:
        if self._consumer_started:
            self._consumer_started = False
            try:
                await self._consumer.stop()
            except Exception as e:
                log_exception(logger, e, "Error stopping consumer")
            finally:
                update_connection_status("consumer", connected=False)
                update_held_partitions(self.config.group_id, 0)

        try:
            await self._producer.stop()
        except Exception as e:
            log_exception(logger, e, "Error stopping producer")

        if self.topology.admin is not None:
            try:
                await self._admin.close()
            except Exception as e:
                log_exception(logger, e, "Error closing admin client")
            finally:
                update_connection_status("admin", connected=False)
                self.topology.admin = None

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    async def teardown_topics(self) -> Dict[str, ProvisioningReport]:
        """
        Delete the topic sets of all configured topics.

        Uses the connected admin client, or a short-lived one when the
        commander is not connected.

        Raises:
            ProvisioningError: If the broker rejects a deletion
        """
        temporary: Optional[AIOKafkaAdminClient] = None
        if self.topology.admin is None:
            temporary = AIOKafkaAdminClient(**self.config.kafka.admin_kwargs())
            await temporary.start()
            self.topology.admin = temporary

        try:
            reports: Dict[str, ProvisioningReport] = {}
            for topic in self.config.topics:
                reports[topic] = await self.topology.teardown(topic)
            return reports
        finally:
            if temporary is not None:
                self.topology.admin = None
                await temporary.close()

    async def __aenter__(self) -> "KafkaRetryCommander":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.shutdown()


__all__ = [
    "LifecycleState",
    "ConsumerPartitionController",
    "KafkaRetryCommander",
    "FAILED_REDELIVERY_DELAY_MS",
]
