"""
Topic topology for the retry layer.

For every logical topic ``T`` the retry layer uses a fixed set of topics:
the main topic, ``max_retries`` retry (delay) topics and one dead-letter
topic. TopicTopologyManager is the single source of those names; the
provisioning path and the dispatch path both call ``topology_for`` so the
two can never drift apart.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from aiokafka.admin import NewTopic
from aiokafka.errors import (
    TopicAlreadyExistsError,
    UnknownTopicOrPartitionError,
    for_code,
)

from kafka_retry.config import RetryConfig
from kafka_retry.exceptions import ConfigurationError, ProvisioningError
from kafka_retry.logging import get_logger, log_exception, log_with_context

logger = get_logger(__name__)


class TopicKind(str, Enum):
    """Role a concrete topic plays in a topic set."""

    MAIN = "main"
    RETRY = "retry"
    DLQ = "dlq"


@dataclass(frozen=True)
class TopicRole:
    """Reverse lookup entry: which logical topic a concrete topic belongs to."""

    logical_topic: str
    kind: TopicKind
    level: int = 0


@dataclass(frozen=True)
class TopicSet:
    """Main, retry and DLQ topic names for one logical topic.

    ``retry`` holds the retry topics in level order, so level ``n`` is
    ``retry[n - 1]``. Use ``retry_topic(n)`` rather than indexing directly.
    """

    main: str
    retry: Tuple[str, ...]
    dlq: str

    def retry_topic(self, level: int) -> str:
        """Topic for retry level ``level`` (1-based)."""
        if level < 1 or level > len(self.retry):
            raise ValueError(
                f"Retry level {level} outside 1..{len(self.retry)} for topic {self.main}"
            )
        return self.retry[level - 1]

    def all_topics(self) -> List[str]:
        """Every topic in the set, de-duplicated, in main/retry/dlq order."""
        seen: List[str] = []
        for name in (self.main, *self.retry, self.dlq):
            if name not in seen:
                seen.append(name)
        return seen


@dataclass
class ProvisioningReport:
    """Outcome of a provision or teardown call."""

    created: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class TopicTopologyManager:
    """
    Computes and provisions the topic set for each logical topic.

    Usage:
        >>> manager = TopicTopologyManager(retry_config, admin_client)
        >>> topic_set = manager.topology_for("orders")
        >>> topic_set.retry_topic(1)
        'orders.retry.1'
        >>> await manager.provision(topic_set)
    """

    def __init__(self, config: RetryConfig, admin=None):
        """
        Initialize topology manager.

        Args:
            config: Retry configuration (naming overrides, provisioning params)
            admin: Started AIOKafkaAdminClient; only needed for provision/teardown
        """
        self.config = config
        self.admin = admin
        self._cache: Dict[str, TopicSet] = {}

    # -------------------------------------------------------------------------
    # Naming
    # -------------------------------------------------------------------------

    def _retry_name(self, topic: str, level: int) -> str:
        naming = self.config.topics.retry
        if naming is None:
            return f"{topic}.retry.{level}"
        if callable(naming):
            return str(naming(level))
        if "{" in naming:
            return naming.format(topic=topic, level=level)
        return naming

    def _dlq_name(self, topic: str) -> str:
        naming = self.config.topics.dlq
        if naming is None:
            return f"{topic}.dlq"
        if "{" in naming:
            return naming.format(topic=topic)
        return naming

    def topology_for(self, topic: str) -> TopicSet:
        """
        Topic set for a logical topic. Deterministic for a given config.

        Results are cached, so a naming callable is invoked once per level.
        """
        cached = self._cache.get(topic)
        if cached is not None:
            return cached

        topic_set = TopicSet(
            main=topic,
            retry=tuple(
                self._retry_name(topic, level)
                for level in range(1, self.config.max_retries + 1)
            ),
            dlq=self._dlq_name(topic),
        )
        self._cache[topic] = topic_set
        return topic_set

    def retry_topic(self, topic: str, level: int) -> str:
        return self.topology_for(topic).retry_topic(level)

    def dlq_topic(self, topic: str) -> str:
        return self.topology_for(topic).dlq

    def topic_index(self, topics: List[str]) -> Dict[str, TopicRole]:
        """
        Reverse map from concrete topic name to its role.

        DLQ roles take precedence so a shared DLQ name always classifies as
        DLQ. When a static retry name is shared by several levels the
        lowest level wins.

        Raises:
            ConfigurationError: If a DLQ name collides with a main or retry topic
        """
        index: Dict[str, TopicRole] = {}
        for logical in topics:
            topic_set = self.topology_for(logical)
            index.setdefault(topic_set.main, TopicRole(logical, TopicKind.MAIN))
            for level, name in enumerate(topic_set.retry, start=1):
                index.setdefault(name, TopicRole(logical, TopicKind.RETRY, level))

        for logical in topics:
            dlq = self.topology_for(logical).dlq
            existing = index.get(dlq)
            if existing is not None and existing.kind != TopicKind.DLQ:
                raise ConfigurationError(
                    f"DLQ topic {dlq!r} collides with {existing.kind.value} topic "
                    f"of {existing.logical_topic!r}"
                )
            index.setdefault(dlq, TopicRole(logical, TopicKind.DLQ))
        return index

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    def _new_topics(self, topic_set: TopicSet) -> List[NewTopic]:
        topic_config = self.config.topic_config
        retention = topic_config.retention

        def _new(name: str, retention_ms: Optional[int]) -> NewTopic:
            configs = {"retention.ms": str(retention_ms)} if retention_ms is not None else {}
            return NewTopic(
                name=name,
                num_partitions=topic_config.partitions,
                replication_factor=topic_config.replication_factor,
                topic_configs=configs,
            )

        new_topics = [_new(topic_set.main, None)]
        for name in dict.fromkeys(topic_set.retry):
            if name not in (topic_set.main, topic_set.dlq):
                new_topics.append(_new(name, retention.retry_topics_ms if retention else None))
        if topic_set.dlq != topic_set.main:
            new_topics.append(_new(topic_set.dlq, retention.dlq_ms if retention else None))
        return new_topics

    def _require_admin(self):
        if self.admin is None:
            raise ConfigurationError("An admin client is required for topic provisioning")
        return self.admin

    async def provision(self, topic_set: TopicSet) -> ProvisioningReport:
        """
        Create every topic in the set. Idempotent.

        Topics that already exist count as success. Any other broker
        rejection raises ProvisioningError; topics created before the
        failure are left in place and listed in the error's report.

        Raises:
            ProvisioningError: If the broker rejects any topic
        """
        admin = self._require_admin()
        new_topics = self._new_topics(topic_set)
        report = ProvisioningReport()

        log_with_context(
            logger,
            logging.INFO,
            "Provisioning topic set",
            topics=[t.name for t in new_topics],
        )

        try:
            response = await admin.create_topics(new_topics)
        except Exception as e:
            log_exception(logger, e, "Topic creation request failed")
            raise ProvisioningError(
                f"Topic creation failed for {topic_set.main}", report=report, cause=e
            ) from e

        for entry in getattr(response, "topic_errors", None) or []:
            name, error_code = entry[0], entry[1]
            error_message = entry[2] if len(entry) > 2 else None
            if error_code == 0:
                report.created.append(name)
                continue
            error_type = for_code(error_code)
            if error_type is TopicAlreadyExistsError:
                report.existing.append(name)
            else:
                report.failed[name] = error_message or error_type.__name__

        log_with_context(
            logger,
            logging.INFO if report.ok else logging.ERROR,
            "Topic set provisioned" if report.ok else "Topic set partially provisioned",
            created_topics=report.created,
            existing_topics=report.existing,
            failed_topics=report.failed,
        )

        if not report.ok:
            raise ProvisioningError(
                f"Broker rejected topics for {topic_set.main}: {report.failed}",
                report=report,
            )
        return report

    async def teardown(self, topic: str) -> ProvisioningReport:
        """
        Delete the full topic set for a logical topic.

        Administrative only; never called during steady-state processing.
        Topics that no longer exist count as deleted.

        Raises:
            ProvisioningError: If the broker rejects any deletion
        """
        admin = self._require_admin()
        names = self.topology_for(topic).all_topics()
        report = ProvisioningReport()

        log_with_context(logger, logging.WARNING, "Deleting topic set", topics=names)

        try:
            response = await admin.delete_topics(names)
        except Exception as e:
            log_exception(logger, e, "Topic deletion request failed")
            raise ProvisioningError(
                f"Topic deletion failed for {topic}", report=report, cause=e
            ) from e

        for name, error_code in getattr(response, "topic_error_codes", None) or []:
            if error_code == 0:
                report.deleted.append(name)
                continue
            error_type = for_code(error_code)
            if error_type is UnknownTopicOrPartitionError:
                report.missing.append(name)
            else:
                report.failed[name] = error_type.__name__

        if not report.ok:
            raise ProvisioningError(
                f"Broker rejected topic deletion for {topic}: {report.failed}",
                report=report,
            )
        return report


__all__ = [
    "TopicKind",
    "TopicRole",
    "TopicSet",
    "ProvisioningReport",
    "TopicTopologyManager",
]
