"""
Reminder pipeline configuration.

Configuration priority (highest to lowest):
1. Environment variables
2. config.yaml file (``broker:`` and ``reminders:`` sections)
3. Dataclass defaults
"""

import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from reminder_pipeline.common.exceptions import ConfigurationError
from reminder_pipeline.common.resilience.retry import RetryConfig

# Default config path: config.yaml in src/ directory
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def _env_overrides(
    mapping: Dict[str, tuple],
) -> Dict[str, Any]:
    """Collect set environment variables as typed field overrides.

    Args:
        mapping: field name -> (ENV_VAR, cast)
    """
    overrides: Dict[str, Any] = {}
    for field_name, (env_var, cast) in mapping.items():
        raw = os.getenv(env_var)
        if raw is None or raw == "":
            continue
        try:
            overrides[field_name] = cast(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for {env_var}: {raw!r}", cause=e
            ) from e
    return overrides


def _known_fields(cls: type, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class BrokerConfig:
    """Kafka connection and channel configuration.

    The broker is addressed by host and port unless bootstrap_servers is set
    explicitly. ``namespace`` isolates topics the way a virtual host isolates
    queues: when set, every topic name is prefixed with ``<namespace>.``.
    """

    # Connection
    host: str = "localhost"
    port: int = 9092
    bootstrap_servers: str = ""
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str = "PLAIN"
    username: str = ""
    password: str = ""
    namespace: str = ""
    client_id: str = "task-reminder-pipeline"

    # Channel names
    reminders_topic: str = "task.reminders"
    consumer_group: str = "task-reminder-consumer"

    # Producer defaults
    acks: str = "all"
    request_timeout_ms: int = 30000
    # Upper bound on one publish, so a dead broker fails sends fast
    publish_timeout_seconds: float = 10.0

    # Consumer defaults
    auto_offset_reset: str = "earliest"
    session_timeout_ms: int = 30000
    max_poll_interval_ms: int = 300000  # 5 minutes

    # Connection retry policy
    connect_max_attempts: int = 5
    connect_initial_delay_seconds: float = 1.0
    connect_max_delay_seconds: float = 30.0
    # Seconds a permanently failed connection stays down before a fresh
    # attempt cycle is allowed (0 = never)
    failure_cooldown_seconds: float = 300.0

    ENV_VARS = {
        "host": ("KAFKA_HOST", str),
        "port": ("KAFKA_PORT", int),
        "bootstrap_servers": ("KAFKA_BOOTSTRAP_SERVERS", str),
        "security_protocol": ("KAFKA_SECURITY_PROTOCOL", str),
        "sasl_mechanism": ("KAFKA_SASL_MECHANISM", str),
        "username": ("KAFKA_USERNAME", str),
        "password": ("KAFKA_PASSWORD", str),
        "namespace": ("KAFKA_NAMESPACE", str),
        "client_id": ("KAFKA_CLIENT_ID", str),
        "reminders_topic": ("KAFKA_REMINDERS_TOPIC", str),
        "consumer_group": ("KAFKA_CONSUMER_GROUP", str),
        "acks": ("KAFKA_ACKS", str),
        "request_timeout_ms": ("KAFKA_REQUEST_TIMEOUT_MS", int),
        "publish_timeout_seconds": ("KAFKA_PUBLISH_TIMEOUT_SECONDS", float),
        "auto_offset_reset": ("KAFKA_AUTO_OFFSET_RESET", str),
        "session_timeout_ms": ("KAFKA_SESSION_TIMEOUT_MS", int),
        "connect_max_attempts": ("KAFKA_CONNECT_MAX_ATTEMPTS", int),
        "connect_initial_delay_seconds": ("KAFKA_CONNECT_INITIAL_DELAY_SECONDS", float),
        "connect_max_delay_seconds": ("KAFKA_CONNECT_MAX_DELAY_SECONDS", float),
        "failure_cooldown_seconds": ("KAFKA_FAILURE_COOLDOWN_SECONDS", float),
    }

    def __post_init__(self) -> None:
        if not self.bootstrap_servers:
            self.bootstrap_servers = f"{self.host}:{self.port}"

    @classmethod
    def from_env(cls) -> "BrokerConfig":
        """Load configuration from environment variables only.

        Optional environment variables (with defaults):
            KAFKA_HOST: localhost
            KAFKA_PORT: 9092
            KAFKA_BOOTSTRAP_SERVERS: derived from host and port
            KAFKA_SECURITY_PROTOCOL: PLAINTEXT
            KAFKA_SASL_MECHANISM: PLAIN
            KAFKA_USERNAME / KAFKA_PASSWORD: SASL credentials
            KAFKA_NAMESPACE: topic prefix (empty)
            KAFKA_REMINDERS_TOPIC: task.reminders
            KAFKA_CONSUMER_GROUP: task-reminder-consumer
        """
        config = cls(**_env_overrides(cls.ENV_VARS))
        config.validate()
        return config

    @property
    def topic(self) -> str:
        """Reminders topic with the namespace applied."""
        if self.namespace:
            return f"{self.namespace}.{self.reminders_topic}"
        return self.reminders_topic

    @property
    def retry(self) -> RetryConfig:
        """Connection retry policy."""
        return RetryConfig(
            max_attempts=self.connect_max_attempts,
            initial_delay_seconds=self.connect_initial_delay_seconds,
            max_delay_seconds=self.connect_max_delay_seconds,
        )

    def client_kwargs(self) -> Dict[str, Any]:
        """Connection and security settings shared by producer and consumer."""
        kwargs: Dict[str, Any] = {
            "bootstrap_servers": self.bootstrap_servers,
            "client_id": self.client_id,
            "request_timeout_ms": self.request_timeout_ms,
        }
        if self.security_protocol != "PLAINTEXT":
            kwargs["security_protocol"] = self.security_protocol
            kwargs["sasl_mechanism"] = self.sasl_mechanism
            if self.sasl_mechanism.startswith(("PLAIN", "SCRAM")):
                kwargs["sasl_plain_username"] = self.username
                kwargs["sasl_plain_password"] = self.password
        return kwargs

    def validate(self) -> None:
        if not self.reminders_topic:
            raise ConfigurationError("reminders_topic must not be empty")
        if not self.consumer_group:
            raise ConfigurationError("consumer_group must not be empty")
        if self.connect_max_attempts < 1:
            raise ConfigurationError("connect_max_attempts must be at least 1")
        if self.failure_cooldown_seconds < 0:
            raise ConfigurationError("failure_cooldown_seconds must be non-negative")
        if self.publish_timeout_seconds <= 0:
            raise ConfigurationError("publish_timeout_seconds must be positive")
        if self.security_protocol.startswith("SASL") and not self.username:
            raise ConfigurationError(
                f"username is required for security_protocol={self.security_protocol}"
            )


@dataclass
class ReminderConfig:
    """Scanner, consumer and dedup settings."""

    # Scanner
    scan_interval_minutes: float = 5
    initial_delay_seconds: float = 10
    store_url: str = ""
    store_timeout_seconds: float = 30

    # Consumer
    dedup_window_minutes: float = 60
    sweep_interval_minutes: float = 10
    prefetch_count: int = 10
    reminder_log_enabled: bool = False

    # Fire-and-forget publishing through a PublishPool
    fire_and_forget: bool = False
    publish_pool_workers: int = 2
    publish_pool_queue_size: int = 1000

    ENV_VARS = {
        "scan_interval_minutes": ("REMINDER_SCAN_INTERVAL_MINUTES", float),
        "initial_delay_seconds": ("REMINDER_INITIAL_DELAY_SECONDS", float),
        "store_url": ("TASK_STORE_URL", str),
        "store_timeout_seconds": ("REMINDER_STORE_TIMEOUT_SECONDS", float),
        "dedup_window_minutes": ("REMINDER_DEDUP_WINDOW_MINUTES", float),
        "sweep_interval_minutes": ("REMINDER_SWEEP_INTERVAL_MINUTES", float),
        "prefetch_count": ("REMINDER_PREFETCH_COUNT", int),
        "reminder_log_enabled": ("REMINDER_LOG_ENABLED", _parse_bool),
        "fire_and_forget": ("REMINDER_FIRE_AND_FORGET", _parse_bool),
        "publish_pool_workers": ("REMINDER_PUBLISH_POOL_WORKERS", int),
        "publish_pool_queue_size": ("REMINDER_PUBLISH_POOL_QUEUE_SIZE", int),
    }

    @classmethod
    def from_env(cls) -> "ReminderConfig":
        config = cls(**_env_overrides(cls.ENV_VARS))
        config.validate()
        return config

    @property
    def scan_interval(self) -> timedelta:
        return timedelta(minutes=self.scan_interval_minutes)

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(minutes=self.dedup_window_minutes)

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(minutes=self.sweep_interval_minutes)

    def validate(self) -> None:
        positive: Dict[str, float] = {
            "scan_interval_minutes": self.scan_interval_minutes,
            "dedup_window_minutes": self.dedup_window_minutes,
            "sweep_interval_minutes": self.sweep_interval_minutes,
            "prefetch_count": self.prefetch_count,
            "store_timeout_seconds": self.store_timeout_seconds,
            "publish_pool_workers": self.publish_pool_workers,
            "publish_pool_queue_size": self.publish_pool_queue_size,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        if self.initial_delay_seconds < 0:
            raise ConfigurationError("initial_delay_seconds must be non-negative")


@dataclass
class PipelineConfig:
    """Complete configuration for the reminder pipeline."""

    broker: BrokerConfig = field(default_factory=BrokerConfig)
    reminders: ReminderConfig = field(default_factory=ReminderConfig)

    @classmethod
    def load_config(cls, config_path: Optional[Path] = None) -> "PipelineConfig":
        """Load configuration from config.yaml and environment variables.

        A missing config file is not an error; defaults and environment
        variables still apply.

        Raises:
            ConfigurationError: If a value is invalid
        """
        config_path = config_path or Path(
            os.getenv("REMINDER_CONFIG_PATH", str(DEFAULT_CONFIG_PATH))
        )

        yaml_data: Dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, "r") as f:
                yaml_data = yaml.safe_load(f) or {}
        if not isinstance(yaml_data, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping")

        broker_data = _known_fields(BrokerConfig, yaml_data.get("broker") or {})
        broker_data.update(_env_overrides(BrokerConfig.ENV_VARS))
        reminder_data = _known_fields(ReminderConfig, yaml_data.get("reminders") or {})
        reminder_data.update(_env_overrides(ReminderConfig.ENV_VARS))

        config = cls(
            broker=BrokerConfig(**broker_data),
            reminders=ReminderConfig(**reminder_data),
        )
        config.broker.validate()
        config.reminders.validate()
        return config


_pipeline_config: Optional[PipelineConfig] = None


def get_pipeline_config(config_path: Optional[Path] = None) -> PipelineConfig:
    """Get the process-wide pipeline configuration, loading it once."""
    global _pipeline_config
    if _pipeline_config is None:
        _pipeline_config = PipelineConfig.load_config(config_path)
    return _pipeline_config


def reset_config() -> None:
    """Forget the cached configuration (tests)."""
    global _pipeline_config
    _pipeline_config = None
