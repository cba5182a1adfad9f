"""
Producer for outbound retry and DLQ records.

Records are republished byte-for-byte (key and value untouched); only the
headers change between hops.
"""

import logging
from typing import Dict, Optional

from aiokafka import AIOKafkaProducer
from aiokafka.structs import RecordMetadata

from kafka_retry.config import KafkaConfig
from kafka_retry.exceptions import PublishError
from kafka_retry.logging import get_logger, log_exception, log_with_context
from kafka_retry.message import encode_headers
from kafka_retry.metrics import record_message_produced, update_connection_status

logger = get_logger(__name__)


class RetryProducer:
    """
    Async Kafka producer used by the orchestrator.

    Usage:
        >>> producer = RetryProducer(KafkaConfig())
        >>> await producer.start()
        >>> try:
        ...     await producer.send("orders.retry.1", key, value, headers)
        ... finally:
        ...     await producer.stop()
    """

    def __init__(self, config: KafkaConfig, producer: Optional[AIOKafkaProducer] = None):
        """
        Initialize producer.

        Args:
            config: Kafka configuration
            producer: Pre-built aiokafka producer (tests); created on start() otherwise
        """
        self.config = config
        self._producer = producer
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """
        Start the producer and connect to the cluster.

        Raises:
            Exception: If the producer fails to connect
        """
        if self._started:
            logger.warning("Producer already started, ignoring duplicate start call")
            return

        if self._producer is None:
            self._producer = AIOKafkaProducer(**self.config.producer_kwargs())

        await self._producer.start()
        self._started = True
        update_connection_status("producer", connected=True)

        log_with_context(
            logger,
            logging.INFO,
            "Retry producer started",
            bootstrap_servers=self.config.bootstrap_servers,
            acks=self.config.acks,
        )

    async def stop(self) -> None:
        """Flush and stop the producer. Safe to call multiple times."""
        if not self._started or self._producer is None:
            logger.debug("Producer not started or already stopped")
            return

        try:
            await self._producer.flush()
            await self._producer.stop()
            logger.info("Retry producer stopped")
        except Exception as e:
            log_exception(logger, e, "Error stopping retry producer")
            raise
        finally:
            update_connection_status("producer", connected=False)
            self._producer = None
            self._started = False

    async def send(
        self,
        topic: str,
        key: Optional[bytes],
        value: Optional[bytes],
        headers: Dict[str, str],
    ) -> RecordMetadata:
        """
        Publish one record and wait for the broker acknowledgement.

        Args:
            topic: Target retry or DLQ topic
            key: Record key bytes (partitioning preserved across hops)
            value: Record value bytes as originally received
            headers: Retry protocol headers

        Returns:
            RecordMetadata of the written record

        Raises:
            PublishError: If the producer is not started or the send fails
        """
        if not self._started or self._producer is None:
            raise PublishError("Producer not started. Call start() first.", topic=topic)

        try:
            metadata = await self._producer.send_and_wait(
                topic,
                key=key,
                value=value,
                headers=encode_headers(headers),
            )
        except Exception as e:
            record_message_produced(topic, success=False)
            log_exception(logger, e, "Failed to publish record", target_topic=topic)
            raise PublishError(f"Failed to publish to {topic}", topic=topic, cause=e) from e

        record_message_produced(topic, success=True)
        log_with_context(
            logger,
            logging.DEBUG,
            "Record published",
            target_topic=metadata.topic,
            target_partition=metadata.partition,
            target_offset=metadata.offset,
        )
        return metadata


__all__ = ["RetryProducer"]
