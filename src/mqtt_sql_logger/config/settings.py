"""Configuration settings using Pydantic for validation."""

import os
import re
import socket
from typing import Any, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

# "ix_<table>_topic_received_at" must stay within PostgreSQL's 63-byte limit
_MAX_TABLE_NAME_LENGTH = 63 - len("ix__topic_received_at")

LOG_LEVEL_NAMES = (
    "trace", "debug", "information", "info", "warning",
    "error", "critical", "none",
)


def _default_client_id() -> str:
    return f"mqtt-sql-logger-{socket.gethostname()}"


class MqttConfig(BaseModel):
    """MQTT broker configuration."""
    model_config = ConfigDict(frozen=True)

    broker_host: str = Field(default="localhost", description="Broker hostname")
    broker_port: int = Field(default=1883, ge=1, le=65535, description="Broker TCP port")
    client_id: str = Field(default_factory=_default_client_id, description="MQTT client identifier")
    username: Optional[str] = Field(default=None, description="Broker username")
    password: Optional[str] = Field(default=None, description="Broker password")
    # A comma-separated string is accepted so MQTT__TOPICS=tele/#,stat/# works
    topics: Union[Tuple[str, ...], str] = Field(default=("#",), description="Topic filters, in subscription order")
    qos: int = Field(default=1, ge=0, le=2, description="Subscription QoS")
    protocol_version: str = Field(default="5", description="MQTT protocol version: 5 or 3.1.1")
    keepalive_seconds: int = Field(default=60, ge=1, description="Keepalive interval")
    connect_timeout_seconds: float = Field(default=10.0, gt=0, description="TCP connect timeout")
    operation_timeout_seconds: float = Field(default=10.0, gt=0, description="CONNACK/SUBACK wait")

    @field_validator("topics", mode="before")
    @classmethod
    def split_topics(cls, v: Any) -> Tuple[str, ...]:
        if isinstance(v, str):
            v = v.split(",")
        topics = tuple(str(t).strip() for t in v if str(t).strip())
        if not topics:
            raise ValueError("At least one topic filter is required")
        return topics

    @field_validator("protocol_version")
    @classmethod
    def validate_protocol_version(cls, v: str) -> str:
        v = v.strip()
        if v in ("5", "5.0"):
            return "5"
        if v in ("3.1.1", "311", "4"):
            return "3.1.1"
        raise ValueError("Protocol version must be '5' or '3.1.1'")


class SqlConfig(BaseModel):
    """PostgreSQL store configuration."""
    model_config = ConfigDict(frozen=True)

    connection_string: str = Field(
        default="postgresql://postgres@localhost:5432/mqtt_logs",
        description="PostgreSQL DSN",
    )
    create_table: bool = Field(default=True, description="Provision table and indexes at startup")
    schema_name: str = Field(default="public", description="Target schema")
    table_name: str = Field(default="mqtt_message_log", description="Target table")
    connect_timeout_seconds: float = Field(default=10.0, gt=0, description="Connection timeout")
    command_timeout_seconds: float = Field(default=30.0, gt=0, description="Statement timeout")

    @field_validator("schema_name", "table_name")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not _IDENTIFIER_RE.match(v):
            raise ValueError(f"Invalid SQL identifier: {v!r}")
        # Names go into DDL unquoted, so PostgreSQL folds them to lower case
        return v.lower()

    @field_validator("table_name")
    @classmethod
    def validate_table_name_length(cls, v: str) -> str:
        if len(v) > _MAX_TABLE_NAME_LENGTH:
            raise ValueError(
                f"Table name {v!r} is longer than {_MAX_TABLE_NAME_LENGTH} characters; "
                f"its index names would be truncated"
            )
        return v


class LogConfig(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(frozen=True)

    level: str = Field(default="Information", description="Trace|Debug|Information|Warning|Error|Critical|None")
    format: str = Field(default="text", description="Log format: json or text")
    output: str = Field(default="stdout", description="stdout, stderr or a file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.strip().lower() not in LOG_LEVEL_NAMES:
            raise ValueError(f"Unknown log level: {v}")
        return v.strip()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v.lower() not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class StartupConfig(BaseModel):
    """Startup behaviour."""
    model_config = ConfigDict(frozen=True)

    delay_ms: int = Field(default=0, ge=0, description="Wait before the first connection attempt")


class RetryConfig(BaseModel):
    """Reconnect backoff configuration."""
    model_config = ConfigDict(frozen=True)

    initial_backoff_ms: int = Field(default=1000, ge=0, description="Delay after the first failure")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Growth per failed attempt")
    max_backoff_ms: int = Field(default=30000, ge=0, description="Cap on the base delay")
    max_jitter_ms: int = Field(default=2000, ge=0, description="Upper bound of random jitter")


class IngestionConfig(BaseModel):
    """Ingestion pipeline configuration."""
    model_config = ConfigDict(frozen=True)

    max_concurrency: int = Field(default=1000, ge=1, description="Concurrent storage writes")
    summary_interval: int = Field(default=100, ge=1, description="Log a summary every N deliveries")


class BridgeSettings(BaseSettings):
    """Main service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    service_name: str = Field(default="mqtt-sql-logger", description="Service name")

    mqtt: MqttConfig = Field(default_factory=MqttConfig)
    sql: SqlConfig = Field(default_factory=SqlConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    startup: StartupConfig = Field(default_factory=StartupConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)


# ${NAME} or ${NAME:-fallback}
_ENV_REF_RE = re.compile(r"\$\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*(?::-([^}]*))?\}")


def _expand_env_ref(match: "re.Match[str]") -> str:
    name, fallback = match.group(1), match.group(2)
    value = os.environ.get(name, fallback)
    if value is None:
        raise ValueError(f"Required environment variable '{name}' is not set")
    return value


def substitute_env_vars(obj: Any) -> Any:
    """
    Expand ${NAME} and ${NAME:-fallback} in every string of a loaded YAML tree.

    Raises:
        ValueError: If a referenced variable without a fallback is not set
    """
    if isinstance(obj, str):
        return _ENV_REF_RE.sub(_expand_env_ref, obj)
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [substitute_env_vars(item) for item in obj]
    return obj


def load_settings(config_file: Optional[str] = None) -> BridgeSettings:
    """
    Load settings from an optional YAML file and the environment.

    Values in the file take precedence; anything the file leaves out is read
    from SECTION__KEY environment variables (or .env), then defaults.

    Raises:
        ValueError: If required environment variables are missing
        FileNotFoundError: If config_file is given but doesn't exist
    """
    if config_file and os.path.exists(config_file):
        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)
        return BridgeSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    return BridgeSettings()
