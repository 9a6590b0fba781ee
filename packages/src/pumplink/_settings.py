"""Pump service settings, read from ``PUMPLINK_*`` variables.

Nested groups use ``__`` (``PUMPLINK_MQTT__HOST=broker.local``); a
``.env`` file is read as well.  Durations are seconds throughout.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
)
from pydantic_settings import BaseSettings, SettingsConfigDict


class MqttSettings(BaseModel):
    """Broker connection, pump topic layout and reconnect policy.

    Environment variables (with ``__`` nesting)::

        PUMPLINK_MQTT__HOST=broker.local
        PUMPLINK_MQTT__PORT=8883
        PUMPLINK_MQTT__TLS=true
        PUMPLINK_MQTT__USERNAME=user
        PUMPLINK_MQTT__PASSWORD=secret
        PUMPLINK_MQTT__TOPIC_PREFIX=devices
    """

    host: str = Field(
        default="localhost",
        description="Broker the pumps publish to.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    tls: bool = Field(
        default=False,
        description="Connect using TLS (``mqtts``) with the system trust store.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, the service generates "
            "'pumplink-{hex8}' at startup."
        ),
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="QoS used for subscriptions and outbound commands.",
    )
    topic_prefix: str = Field(
        default="devices",
        description=(
            "Root of the per-device channels: commands go to "
            "'{prefix}/{device}/commands', telemetry arrives on "
            "'{prefix}/{device}/{category}'."
        ),
    )
    service_topic: str = Field(
        default="pumplink",
        description="Root of the service heartbeat topic '{service_topic}/status'.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description=(
            "Base delay for reconnecting after connection loss.  The n-th "
            "consecutive failure waits ``reconnect_interval * n`` seconds."
        ),
    )
    max_reconnect_attempts: Annotated[int, Field(ge=0)] = Field(
        default=5,
        description=(
            "Consecutive failed reconnects tolerated before the connection "
            "is declared lost and the service enters degraded mode."
        ),
    )


class NotificationSettings(BaseModel):
    """Notification cache configuration.

    When ``redis_url`` is set the cache is backed by Redis so that
    several service replicas replay the same notifications; otherwise
    an in-process cache is used.
    """

    ttl_seconds: Annotated[int, Field(gt=0)] = Field(
        default=300,
        description="Lifetime of a cached device notification.",
    )
    presence_ttl_seconds: Annotated[int, Field(gt=0)] = Field(
        default=10,
        description="Lifetime of the per-device presence entry written on status.",
    )
    recent_errors: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Capacity of the per-device recent-error ring buffer.",
    )
    redis_url: str | None = Field(
        default=None,
        description="Redis URL, e.g. ``redis://localhost:6379/0`` (optional).",
    )


class LoggingSettings(BaseModel):
    """Where log lines go and how they look.

    stderr always; ``file`` adds a size-rotated copy.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format: 'json' or 'text'.",
    )
    file: str | None = Field(
        default=None,
        description="Rotating log file path, in addition to stderr.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Rotated generations kept beside the live file.",
    )


class Settings(BaseSettings):
    """Root settings for the pumplink service.

    Example ``.env``::

        PUMPLINK_MQTT__HOST=broker.local
        PUMPLINK_MQTT__PORT=8883
        PUMPLINK_MQTT__TLS=true
        PUMPLINK_NOTIFICATIONS__REDIS_URL=redis://cache:6379/0
        PUMPLINK_LOGGING__LEVEL=DEBUG
        PUMPLINK_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="PUMPLINK_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="forbid",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    notifications: NotificationSettings = Field(
        default_factory=NotificationSettings,
        description="Notification cache settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Log level, format and sinks.",
    )
    record_store: str = Field(
        default="pumplink._store:create_in_memory_store",
        description=(
            "'module:attribute' import string of a factory taking "
            "``settings`` and returning a record store adapter."
        ),
    )
    seed_devices: list[str] = Field(
        default_factory=list,
        description=(
            "Device ids registered at startup by the in-process record "
            "store (ignored by external stores)."
        ),
    )
    heartbeat_interval: Annotated[float, Field(gt=0)] | None = Field(
        default=60.0,
        description="Seconds between service heartbeats; ``None`` disables them.",
    )
