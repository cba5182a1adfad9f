"""
Retry and dead-letter orchestration for aiokafka consumers.

Failed messages are republished through a bounded chain of delay topics
with exponential backoff, then to a dead-letter topic.

Modules:
    commander.py     - KafkaRetryCommander (lifecycle, registration, consume loop)
    orchestrator.py  - per-record dispatch state machine
    topology.py      - retry/DLQ topic naming and provisioning
    backoff.py       - retry/DLQ decision and delay computation
    scheduler.py     - partition pause/resume until retries are due
    hooks.py         - before/after hooks around retry and DLQ transitions
    metrics.py       - metrics sinks (Prometheus, in-memory)
    message.py       - header protocol and RetryableMessage
    validation.py    - payload decoding and validators
    producer.py      - outbound retry/DLQ producer
    config.py        - configuration (code, YAML, environment)
"""

from kafka_retry.commander import KafkaRetryCommander, LifecycleState
from kafka_retry.config import (
    KafkaConfig,
    RetentionConfig,
    RetryCommanderConfig,
    RetryConfig,
    TopicNamingConfig,
    TopicProvisioningConfig,
)
from kafka_retry.exceptions import (
    ConfigurationError,
    DLQHandlerError,
    ErrorCategory,
    HandlerError,
    HookError,
    LifecycleError,
    ProvisioningError,
    PublishError,
    RetryCommanderError,
    ValidationError,
)
from kafka_retry.hooks import FunctionHook, HookCapability, RetryHook
from kafka_retry.message import RetryableMessage, RetryMetadata
from kafka_retry.metrics import InMemoryRetryMetrics, PrometheusRetryMetrics, RetryMetrics
from kafka_retry.orchestrator import DispatchOutcome, DispatchResult
from kafka_retry.topology import TopicSet
from kafka_retry.validation import CallableValidator, MessageValidator, PydanticSchemaValidator

__version__ = "0.1.0"

__all__ = [
    "KafkaRetryCommander",
    "LifecycleState",
    "KafkaConfig",
    "RetryConfig",
    "RetryCommanderConfig",
    "TopicNamingConfig",
    "TopicProvisioningConfig",
    "RetentionConfig",
    "ErrorCategory",
    "RetryCommanderError",
    "ConfigurationError",
    "LifecycleError",
    "ProvisioningError",
    "ValidationError",
    "HandlerError",
    "HookError",
    "PublishError",
    "DLQHandlerError",
    "RetryHook",
    "FunctionHook",
    "HookCapability",
    "RetryableMessage",
    "RetryMetadata",
    "RetryMetrics",
    "PrometheusRetryMetrics",
    "InMemoryRetryMetrics",
    "DispatchOutcome",
    "DispatchResult",
    "TopicSet",
    "MessageValidator",
    "PydanticSchemaValidator",
    "CallableValidator",
]
