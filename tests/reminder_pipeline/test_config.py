"""Tests for pipeline configuration loading."""

from datetime import timedelta

import pytest

from reminder_pipeline.common.exceptions import ConfigurationError
from reminder_pipeline.config import (
    BrokerConfig,
    PipelineConfig,
    ReminderConfig,
    get_pipeline_config,
)


@pytest.fixture
def missing_config(tmp_path):
    return tmp_path / "absent.yaml"


class TestBrokerConfig:
    """Tests for BrokerConfig."""

    def test_defaults(self):
        config = BrokerConfig()

        assert config.bootstrap_servers == "localhost:9092"
        assert config.topic == "task.reminders"
        assert config.acks == "all"
        assert config.failure_cooldown_seconds == 300.0
        assert config.publish_timeout_seconds == 10.0

    def test_bootstrap_derived_from_host_and_port(self):
        config = BrokerConfig(host="kafka.internal", port=29092)
        assert config.bootstrap_servers == "kafka.internal:29092"

    def test_explicit_bootstrap_wins(self):
        config = BrokerConfig(host="ignored", bootstrap_servers="a:1,b:2")
        assert config.bootstrap_servers == "a:1,b:2"

    def test_namespace_prefixes_topic(self):
        config = BrokerConfig(namespace="staging")
        assert config.topic == "staging.task.reminders"

    def test_retry_policy(self):
        retry = BrokerConfig(
            connect_max_attempts=3,
            connect_initial_delay_seconds=0.5,
            connect_max_delay_seconds=4,
        ).retry

        assert retry.max_attempts == 3
        assert retry.initial_delay_seconds == 0.5
        assert retry.max_delay_seconds == 4

    def test_plaintext_client_kwargs(self):
        kwargs = BrokerConfig().client_kwargs()

        assert kwargs["bootstrap_servers"] == "localhost:9092"
        assert "security_protocol" not in kwargs
        assert "sasl_plain_username" not in kwargs

    def test_sasl_client_kwargs(self):
        config = BrokerConfig(
            security_protocol="SASL_SSL",
            sasl_mechanism="SCRAM-SHA-512",
            username="svc",
            password="secret",
        )

        kwargs = config.client_kwargs()

        assert kwargs["security_protocol"] == "SASL_SSL"
        assert kwargs["sasl_mechanism"] == "SCRAM-SHA-512"
        assert kwargs["sasl_plain_username"] == "svc"
        assert kwargs["sasl_plain_password"] == "secret"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("KAFKA_HOST", "broker")
        monkeypatch.setenv("KAFKA_PORT", "19092")
        monkeypatch.setenv("KAFKA_NAMESPACE", "prod")
        monkeypatch.setenv("KAFKA_CONNECT_MAX_ATTEMPTS", "7")

        config = BrokerConfig.from_env()

        assert config.bootstrap_servers == "broker:19092"
        assert config.topic == "prod.task.reminders"
        assert config.connect_max_attempts == 7

    def test_invalid_env_value(self, monkeypatch):
        monkeypatch.setenv("KAFKA_PORT", "not-a-port")

        with pytest.raises(ConfigurationError, match="KAFKA_PORT"):
            BrokerConfig.from_env()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"reminders_topic": ""},
            {"consumer_group": ""},
            {"connect_max_attempts": 0},
            {"failure_cooldown_seconds": -1},
            {"publish_timeout_seconds": 0},
            {"security_protocol": "SASL_SSL"},
        ],
    )
    def test_validate_rejects(self, overrides):
        with pytest.raises(ConfigurationError):
            BrokerConfig(**overrides).validate()


class TestReminderConfig:
    """Tests for ReminderConfig."""

    def test_defaults(self):
        config = ReminderConfig()

        assert config.scan_interval == timedelta(minutes=5)
        assert config.dedup_window == timedelta(minutes=60)
        assert config.sweep_interval == timedelta(minutes=10)
        assert config.prefetch_count == 10
        assert config.reminder_log_enabled is False
        assert config.fire_and_forget is False

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("REMINDER_SCAN_INTERVAL_MINUTES", "1.5")
        monkeypatch.setenv("REMINDER_DEDUP_WINDOW_MINUTES", "30")
        monkeypatch.setenv("REMINDER_LOG_ENABLED", "yes")
        monkeypatch.setenv("TASK_STORE_URL", "sqlite:///tasks.db")

        config = ReminderConfig.from_env()

        assert config.scan_interval == timedelta(seconds=90)
        assert config.dedup_window == timedelta(minutes=30)
        assert config.reminder_log_enabled is True
        assert config.store_url == "sqlite:///tasks.db"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"scan_interval_minutes": 0},
            {"dedup_window_minutes": -5},
            {"prefetch_count": 0},
            {"initial_delay_seconds": -1},
        ],
    )
    def test_validate_rejects(self, overrides):
        with pytest.raises(ConfigurationError):
            ReminderConfig(**overrides).validate()


class TestPipelineConfig:
    """Tests for PipelineConfig.load_config."""

    def test_missing_file_uses_defaults(self, missing_config):
        config = PipelineConfig.load_config(missing_config)

        assert config.broker.topic == "task.reminders"
        assert config.reminders.scan_interval_minutes == 5

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "broker:\n"
            "  host: kafka\n"
            "  namespace: qa\n"
            "  unknown_key: ignored\n"
            "reminders:\n"
            "  scan_interval_minutes: 2\n"
            "  prefetch_count: 25\n"
        )

        config = PipelineConfig.load_config(path)

        assert config.broker.bootstrap_servers == "kafka:9092"
        assert config.broker.topic == "qa.task.reminders"
        assert config.reminders.scan_interval_minutes == 2
        assert config.reminders.prefetch_count == 25

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("reminders:\n  prefetch_count: 25\n")
        monkeypatch.setenv("REMINDER_PREFETCH_COUNT", "3")

        config = PipelineConfig.load_config(path)

        assert config.reminders.prefetch_count == 3

    def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigurationError):
            PipelineConfig.load_config(path)

    def test_invalid_yaml_value_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("reminders:\n  dedup_window_minutes: 0\n")

        with pytest.raises(ConfigurationError):
            PipelineConfig.load_config(path)

    def test_get_pipeline_config_is_cached(self, missing_config):
        first = get_pipeline_config(missing_config)
        assert get_pipeline_config() is first
