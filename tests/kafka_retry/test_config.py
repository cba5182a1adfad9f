"""Tests for configuration loading and validation."""

import pytest

from kafka_retry.config import (
    KafkaConfig,
    RetryCommanderConfig,
    RetryConfig,
    TopicProvisioningConfig,
)
from kafka_retry.exceptions import ConfigurationError


class TestRetryConfig:
    """Tests for RetryConfig validation."""

    def test_defaults(self):
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.initial_delay_ms == 1000
        assert config.backoff_factor == 2.0
        assert config.max_delay_ms is None
        assert config.payload_format == "json"
        assert config.hooks == ()

    def test_is_immutable(self):
        config = RetryConfig()
        with pytest.raises(Exception):
            config.max_retries = 5

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"initial_delay_ms": -5},
            {"backoff_factor": 0.5},
            {"max_delay_ms": -1},
            {"payload_format": "avro"},
            {"topic_config": TopicProvisioningConfig(partitions=0)},
        ],
    )
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ConfigurationError):
            RetryConfig(**kwargs)

    def test_zero_retries_allowed(self):
        assert RetryConfig(max_retries=0).max_retries == 0

    def test_hooks_coerced_to_tuple(self):
        hooks = [object(), object()]
        config = RetryConfig(hooks=hooks)
        assert isinstance(config.hooks, tuple)
        assert list(config.hooks) == hooks

    def test_from_dict(self):
        config = RetryConfig.from_dict(
            {
                "max_retries": 5,
                "initial_delay_ms": 250,
                "backoff_factor": 3,
                "topics": {"dlq": "orders.dead"},
                "topic_config": {
                    "partitions": 6,
                    "replication_factor": 3,
                    "retention": {"retry_topics_ms": 3600000, "dlq_ms": 86400000},
                },
            }
        )
        assert config.max_retries == 5
        assert config.initial_delay_ms == 250
        assert config.topics.dlq == "orders.dead"
        assert config.topics.retry is None
        assert config.topic_config.partitions == 6
        assert config.topic_config.replication_factor == 3
        assert config.topic_config.retention.retry_topics_ms == 3600000
        assert config.topic_config.retention.dlq_ms == 86400000

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigurationError, match="max_retry"):
            RetryConfig.from_dict({"max_retry": 3})

    def test_from_dict_missing_retention_key(self):
        with pytest.raises(ConfigurationError, match="dlq_ms"):
            RetryConfig.from_dict(
                {"topic_config": {"retention": {"retry_topics_ms": 3600000}}}
            )

    def test_from_dict_invalid_partitions(self):
        with pytest.raises(ConfigurationError, match="topic_config"):
            RetryConfig.from_dict({"topic_config": {"partitions": "many"}})


class TestKafkaConfig:
    """Tests for client keyword generation."""

    def test_plaintext_has_no_security_kwargs(self):
        kwargs = KafkaConfig().consumer_kwargs("group-a")
        assert kwargs["group_id"] == "group-a"
        assert kwargs["enable_auto_commit"] is False
        assert "security_protocol" not in kwargs

    def test_sasl_kwargs(self):
        config = KafkaConfig(
            security_protocol="SASL_SSL",
            sasl_mechanism="PLAIN",
            sasl_plain_username="user",
            sasl_plain_password="secret",
        )
        kwargs = config.producer_kwargs()
        assert kwargs["security_protocol"] == "SASL_SSL"
        assert kwargs["sasl_mechanism"] == "PLAIN"
        assert kwargs["sasl_plain_username"] == "user"
        assert kwargs["sasl_plain_password"] == "secret"

    def test_admin_client_id_suffix(self):
        assert KafkaConfig(client_id="svc").admin_kwargs()["client_id"] == "svc-admin"


class TestRetryCommanderConfig:
    """Tests for top-level config construction and loading."""

    def test_requires_topics(self):
        with pytest.raises(ConfigurationError, match="topic"):
            RetryCommanderConfig(group_id="g", topics=[])

    def test_requires_group_id(self):
        with pytest.raises(ConfigurationError, match="group_id"):
            RetryCommanderConfig(group_id="", topics=["orders"])

    def test_load_from_yaml(self, tmp_path, monkeypatch):
        for var in ("KAFKA_GROUP_ID", "KAFKA_TOPICS", "KAFKA_BOOTSTRAP_SERVERS", "RETRY_MAX_RETRIES"):
            monkeypatch.delenv(var, raising=False)

        path = tmp_path / "retry.yaml"
        path.write_text(
            """
kafka:
  bootstrap_servers: broker:9092
  client_id: orders-service
  group_id: orders-consumers
  topics: [orders, payments]
retry:
  max_retries: 2
  initial_delay_ms: 500
  topics:
    retry: "{topic}-delay-{level}"
"""
        )

        config = RetryCommanderConfig.load(path)

        assert config.group_id == "orders-consumers"
        assert config.topics == ["orders", "payments"]
        assert config.kafka.bootstrap_servers == "broker:9092"
        assert config.kafka.client_id == "orders-service"
        assert config.retry.max_retries == 2
        assert config.retry.initial_delay_ms == 500
        assert config.retry.topics.retry == "{topic}-delay-{level}"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "retry.yaml"
        path.write_text(
            "kafka:\n  group_id: from-file\n  topics: [orders]\nretry:\n  max_retries: 2\n"
        )
        monkeypatch.setenv("KAFKA_GROUP_ID", "from-env")
        monkeypatch.setenv("KAFKA_TOPICS", "a, b ,")
        monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "env-broker:9092")
        monkeypatch.setenv("RETRY_MAX_RETRIES", "7")
        monkeypatch.setenv("RETRY_BACKOFF_FACTOR", "1.5")

        config = RetryCommanderConfig.load(path)

        assert config.group_id == "from-env"
        assert config.topics == ["a", "b"]
        assert config.kafka.bootstrap_servers == "env-broker:9092"
        assert config.retry.max_retries == 7
        assert config.retry.backoff_factor == 1.5

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            RetryCommanderConfig.load(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("kafka: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            RetryCommanderConfig.load(path)

    def test_unknown_kafka_key(self, tmp_path):
        path = tmp_path / "retry.yaml"
        path.write_text("kafka:\n  group_id: g\n  topics: [orders]\n  bootstrap: b:9092\n")
        with pytest.raises(ConfigurationError, match="Invalid kafka config"):
            RetryCommanderConfig.load(path)

    def test_non_numeric_env_override(self, tmp_path, monkeypatch):
        path = tmp_path / "retry.yaml"
        path.write_text("kafka:\n  group_id: g\n  topics: [orders]\n")
        monkeypatch.setenv("RETRY_INITIAL_DELAY_MS", "one second")

        with pytest.raises(ConfigurationError, match="RETRY_INITIAL_DELAY_MS"):
            RetryCommanderConfig.load(path)
