"""Retry commander configuration from code, YAML files and environment variables."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import yaml

from kafka_retry.exceptions import ConfigurationError

RetryTopicNaming = Union[str, Callable[[int], str]]
ErrorHandler = Callable[[BaseException, Any], Union[None, Awaitable[None]]]

PAYLOAD_FORMATS = ("json", "raw")

_RETRY_ENV_OVERRIDES: Tuple[Tuple[str, str, Callable[[str], Any]], ...] = (
    ("RETRY_MAX_RETRIES", "max_retries", int),
    ("RETRY_INITIAL_DELAY_MS", "initial_delay_ms", int),
    ("RETRY_BACKOFF_FACTOR", "backoff_factor", float),
    ("RETRY_MAX_DELAY_MS", "max_delay_ms", int),
)


@dataclass
class KafkaConfig:
    """Kafka connection and client behavior configuration.

    All timing values in milliseconds unless otherwise noted.
    """

    # Connection
    bootstrap_servers: str = "localhost:9092"
    client_id: str = "kafka-retry"
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str = ""

    # SASL credentials (PLAIN / SCRAM)
    sasl_plain_username: str = ""
    sasl_plain_password: str = ""

    # Consumer defaults
    auto_offset_reset: str = "latest"
    enable_auto_commit: bool = False
    max_poll_records: int = 100
    max_poll_interval_ms: int = 300000  # 5 minutes
    session_timeout_ms: int = 30000
    fetch_timeout_ms: int = 1000

    # Producer defaults
    acks: Union[str, int] = "all"

    # Connection timeouts
    request_timeout_ms: int = 30000

    def _security_kwargs(self) -> Dict[str, Any]:
        security: Dict[str, Any] = {}
        if self.security_protocol != "PLAINTEXT":
            security["security_protocol"] = self.security_protocol
            if self.sasl_mechanism:
                security["sasl_mechanism"] = self.sasl_mechanism
                security["sasl_plain_username"] = self.sasl_plain_username
                security["sasl_plain_password"] = self.sasl_plain_password
        return security

    def consumer_kwargs(self, group_id: str) -> Dict[str, Any]:
        """Keyword arguments for AIOKafkaConsumer."""
        kwargs = {
            "bootstrap_servers": self.bootstrap_servers,
            "client_id": self.client_id,
            "group_id": group_id,
            "enable_auto_commit": self.enable_auto_commit,
            "auto_offset_reset": self.auto_offset_reset,
            "max_poll_records": self.max_poll_records,
            "max_poll_interval_ms": self.max_poll_interval_ms,
            "session_timeout_ms": self.session_timeout_ms,
            "request_timeout_ms": self.request_timeout_ms,
        }
        kwargs.update(self._security_kwargs())
        return kwargs

    def producer_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for AIOKafkaProducer."""
        kwargs = {
            "bootstrap_servers": self.bootstrap_servers,
            "client_id": self.client_id,
            "acks": self.acks,
            "request_timeout_ms": self.request_timeout_ms,
        }
        kwargs.update(self._security_kwargs())
        return kwargs

    def admin_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for AIOKafkaAdminClient."""
        kwargs = {
            "bootstrap_servers": self.bootstrap_servers,
            "client_id": f"{self.client_id}-admin",
            "request_timeout_ms": self.request_timeout_ms,
        }
        kwargs.update(self._security_kwargs())
        return kwargs


@dataclass(frozen=True)
class TopicNamingConfig:
    """Overrides for retry and DLQ topic names.

    ``retry`` may be a static name, a template using ``{topic}`` and
    ``{level}`` placeholders, or a callable receiving the retry level.
    ``dlq`` may be a static name or a template using ``{topic}``.
    Defaults are ``{topic}.retry.{level}`` and ``{topic}.dlq``.
    """

    retry: Optional[RetryTopicNaming] = None
    dlq: Optional[str] = None


@dataclass(frozen=True)
class RetentionConfig:
    """Retention per topic class, in milliseconds."""

    retry_topics_ms: int
    dlq_ms: int


@dataclass(frozen=True)
class TopicProvisioningConfig:
    """Parameters used when creating the topic set."""

    partitions: int = 1
    replication_factor: int = 1
    retention: Optional[RetentionConfig] = None


@dataclass(frozen=True)
class RetryConfig:
    """Immutable retry policy.

    Delays are in milliseconds. ``max_delay_ms`` caps the exponential
    backoff only when set; the default leaves it unbounded.
    """

    max_retries: int = 3
    initial_delay_ms: int = 1000
    backoff_factor: float = 2.0
    max_delay_ms: Optional[int] = None
    topics: TopicNamingConfig = field(default_factory=TopicNamingConfig)
    topic_config: TopicProvisioningConfig = field(default_factory=TopicProvisioningConfig)
    payload_format: str = "json"
    validator: Optional[Any] = None
    hooks: Tuple[Any, ...] = ()
    metrics: Optional[Any] = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_delay_ms < 0:
            raise ConfigurationError(
                f"initial_delay_ms must be >= 0, got {self.initial_delay_ms}"
            )
        if self.backoff_factor < 1:
            raise ConfigurationError(
                f"backoff_factor must be >= 1, got {self.backoff_factor}"
            )
        if self.max_delay_ms is not None and self.max_delay_ms < 0:
            raise ConfigurationError(f"max_delay_ms must be >= 0, got {self.max_delay_ms}")
        if self.payload_format not in PAYLOAD_FORMATS:
            raise ConfigurationError(
                f"payload_format must be one of {PAYLOAD_FORMATS}, got {self.payload_format!r}"
            )
        if self.topic_config.partitions < 1 or self.topic_config.replication_factor < 1:
            raise ConfigurationError("partitions and replication_factor must be >= 1")
        # Accept any iterable of hooks but store an immutable tuple
        if not isinstance(self.hooks, tuple):
            object.__setattr__(self, "hooks", tuple(self.hooks))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        """Build from the ``retry`` section of a config file."""
        data = dict(data or {})
        topics = data.pop("topics", None) or {}
        topic_config = dict(data.pop("topic_config", None) or {})
        retention = topic_config.pop("retention", None)

        known = {
            "max_retries",
            "initial_delay_ms",
            "backoff_factor",
            "max_delay_ms",
            "payload_format",
        }
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown retry config keys: {sorted(unknown)}")

        try:
            provisioning = TopicProvisioningConfig(
                partitions=int(topic_config.get("partitions", 1)),
                replication_factor=int(topic_config.get("replication_factor", 1)),
                retention=RetentionConfig(
                    retry_topics_ms=int(retention["retry_topics_ms"]),
                    dlq_ms=int(retention["dlq_ms"]),
                )
                if retention
                else None,
            )
        except KeyError as e:
            raise ConfigurationError(f"Missing retention setting {e}", cause=e) from e
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid topic_config: {e}", cause=e) from e

        return cls(
            topics=TopicNamingConfig(retry=topics.get("retry"), dlq=topics.get("dlq")),
            topic_config=provisioning,
            **data,
        )


@dataclass
class RetryCommanderConfig:
    """Top-level configuration for KafkaRetryCommander.

    Load from a YAML file and/or environment using
    RetryCommanderConfig.load(), or build directly in code.
    """

    group_id: str
    topics: List[str]
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    error_handler: Optional[ErrorHandler] = None

    def __post_init__(self) -> None:
        if not self.topics:
            raise ConfigurationError("At least one topic must be specified")
        if not self.group_id:
            raise ConfigurationError("group_id is required")

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "RetryCommanderConfig":
        """Load configuration from a YAML file, then apply environment overrides.

        File layout:
            kafka:
              bootstrap_servers: localhost:9092
              client_id: orders-service
              group_id: orders-consumers
              topics: [orders]
            retry:
              max_retries: 3
              initial_delay_ms: 1000
              backoff_factor: 2
              topics: {dlq: orders.dead}
              topic_config:
                partitions: 3
                replication_factor: 1
                retention: {retry_topics_ms: 86400000, dlq_ms: 604800000}

        Environment variables (override file values):
            KAFKA_BOOTSTRAP_SERVERS, KAFKA_CLIENT_ID, KAFKA_SECURITY_PROTOCOL,
            KAFKA_SASL_MECHANISM, KAFKA_SASL_PLAIN_USERNAME,
            KAFKA_SASL_PLAIN_PASSWORD, KAFKA_GROUP_ID,
            KAFKA_TOPICS (comma-separated), RETRY_MAX_RETRIES,
            RETRY_INITIAL_DELAY_MS, RETRY_BACKOFF_FACTOR, RETRY_MAX_DELAY_MS

        Raises:
            ConfigurationError: If the file is unreadable or required values are missing
        """
        file_data: Dict[str, Any] = {}
        if path is not None:
            config_path = Path(path)
            if not config_path.exists():
                raise ConfigurationError(f"Config file not found: {config_path}")
            with open(config_path, "r", encoding="utf-8") as f:
                try:
                    file_data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(f"Invalid YAML in {config_path}", cause=e)

        kafka_data = dict(file_data.get("kafka") or {})
        group_id = os.getenv("KAFKA_GROUP_ID", kafka_data.pop("group_id", ""))
        topics_value = os.getenv("KAFKA_TOPICS")
        if topics_value is not None:
            topics = [t.strip() for t in topics_value.split(",") if t.strip()]
        else:
            topics = list(kafka_data.pop("topics", None) or [])
        kafka_data.pop("topics", None)

        try:
            kafka = KafkaConfig(**kafka_data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid kafka config: {e}", cause=e) from e
        kafka = replace(
            kafka,
            bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS", kafka.bootstrap_servers),
            client_id=os.getenv("KAFKA_CLIENT_ID", kafka.client_id),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", kafka.security_protocol),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM", kafka.sasl_mechanism),
            sasl_plain_username=os.getenv(
                "KAFKA_SASL_PLAIN_USERNAME", kafka.sasl_plain_username
            ),
            sasl_plain_password=os.getenv(
                "KAFKA_SASL_PLAIN_PASSWORD", kafka.sasl_plain_password
            ),
        )

        retry = RetryConfig.from_dict(file_data.get("retry") or {})
        overrides: Dict[str, Any] = {}
        for env_name, field_name, cast in _RETRY_ENV_OVERRIDES:
            raw = os.getenv(env_name)
            if not raw:
                continue
            try:
                overrides[field_name] = cast(raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"{env_name} must be a number, got {raw!r}", cause=e
                ) from e
        if overrides:
            retry = replace(retry, **overrides)

        return cls(group_id=group_id, topics=topics, kafka=kafka, retry=retry)


__all__ = [
    "KafkaConfig",
    "TopicNamingConfig",
    "RetentionConfig",
    "TopicProvisioningConfig",
    "RetryConfig",
    "RetryCommanderConfig",
    "PAYLOAD_FORMATS",
]
