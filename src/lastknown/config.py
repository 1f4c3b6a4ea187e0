"""Service configuration for lastknown."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from lastknown._constants import (
    DEFAULT_CACHE_KEY,
    DEFAULT_CACHE_TIMEOUT,
    DEFAULT_CONSUMER_GROUP,
    DEFAULT_ORIGIN_TIMEOUT,
    DEFAULT_REQUEST_DEADLINE,
    DEFAULT_STORE_TIMEOUT,
    DEFAULT_TOPIC,
)
from lastknown.exceptions import ConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Broker connection fields for the MQTT event channel.

    When no MQTT settings are configured the service falls back to the
    in-process :class:`~lastknown.channel.MemoryEventChannel`.
    """

    host: str
    port: int = 1883
    username: str | None = None
    password: str | None = None
    tls: bool = False
    keepalive: int = 60
    client_id: str = "lastknown"


@dataclasses.dataclass(frozen=True)
class LastKnownConfig:
    """Service configuration.

    Parameters
    ----------
    origin_url : str
        Absolute URL of the external data source polled on every request.
    origin_timeout : float
        Hard timeout in seconds for a single origin request. Always
        enforced, a shorter caller deadline can only tighten it.
    cache_timeout : float
        Timeout in seconds for cache reads and writes. Materially shorter
        than ``origin_timeout`` since the cache is the degraded-mode path.
    store_timeout : float
        Timeout in seconds for durable-store reads on the request path.
    request_deadline : float
        Default overall budget in seconds for one ``get_latest`` call.
    cache_key : str
        Cache slot holding the latest observed record.
    topic : str
        Channel topic carrying observed records.
    consumer_group : str
        Consumer group whose cursor the persistence worker advances.
    database_url : str
        SQLAlchemy async URL of the durable store.
    redis_url : str or None
        ``redis://`` URL of the cache. ``None`` selects the in-process cache.
    mqtt : MqttSettings or None
        Broker settings for the event channel. ``None`` selects the
        in-process channel.
    poll_interval : float
        Maximum seconds a worker receive blocks before re-checking for stop.
    retry_backoff : float
        Seconds the worker waits before redelivering a message whose
        durable write failed.
    cache_precheck : bool
        Let the worker skip durable reads/writes for candidates older than
        the cached record.
    conditional_update : bool
        Replace the worker's read-then-write with an atomic
        compare-and-swap on the timestamp. Required once more than one
        worker writes to the same store.
    """

    origin_url: str
    origin_timeout: float = DEFAULT_ORIGIN_TIMEOUT
    cache_timeout: float = DEFAULT_CACHE_TIMEOUT
    store_timeout: float = DEFAULT_STORE_TIMEOUT
    request_deadline: float = DEFAULT_REQUEST_DEADLINE
    cache_key: str = DEFAULT_CACHE_KEY
    topic: str = DEFAULT_TOPIC
    consumer_group: str = DEFAULT_CONSUMER_GROUP
    database_url: str = "sqlite+aiosqlite:///lastknown.db"
    redis_url: str | None = None
    mqtt: MqttSettings | None = None
    poll_interval: float = 1.0
    retry_backoff: float = 1.0
    cache_precheck: bool = False
    conditional_update: bool = False

    def __post_init__(self) -> None:
        if not self.origin_url:
            raise ConfigError("origin_url is required")
        for name in ("origin_timeout", "cache_timeout", "store_timeout", "request_deadline", "poll_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        if self.retry_backoff < 0:
            raise ConfigError(f"retry_backoff must not be negative, got {self.retry_backoff}")

    @classmethod
    def from_env(cls, **overrides: Any) -> LastKnownConfig:
        """Create configuration from environment variables.

        Reads ``LASTKNOWN_ORIGIN_URL`` and optional ``LASTKNOWN_*``
        variables. Explicit keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        LastKnownConfig
            Populated configuration.

        Raises
        ------
        ConfigError
            A variable could not be parsed or a required value is missing.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "LASTKNOWN_ORIGIN_URL": "origin_url",
            "LASTKNOWN_CACHE_KEY": "cache_key",
            "LASTKNOWN_TOPIC": "topic",
            "LASTKNOWN_CONSUMER_GROUP": "consumer_group",
            "LASTKNOWN_DATABASE_URL": "database_url",
            "LASTKNOWN_REDIS_URL": "redis_url",
        }
        _ENV_FLOAT_MAP = {
            "LASTKNOWN_ORIGIN_TIMEOUT": "origin_timeout",
            "LASTKNOWN_CACHE_TIMEOUT": "cache_timeout",
            "LASTKNOWN_STORE_TIMEOUT": "store_timeout",
            "LASTKNOWN_REQUEST_DEADLINE": "request_deadline",
            "LASTKNOWN_POLL_INTERVAL": "poll_interval",
            "LASTKNOWN_RETRY_BACKOFF": "retry_backoff",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                try:
                    config_kwargs[field_name] = float(val)
                except ValueError as exc:
                    raise ConfigError(f"{env_key} must be a number, got {val!r}") from exc

        if "cache_precheck" not in overrides:
            config_kwargs["cache_precheck"] = _env_bool(env.get("LASTKNOWN_CACHE_PRECHECK"), False)
        if "conditional_update" not in overrides:
            config_kwargs["conditional_update"] = _env_bool(env.get("LASTKNOWN_CONDITIONAL_UPDATE"), False)

        # MQTT is enabled by the presence of a broker host
        mqtt_host = env.get("LASTKNOWN_MQTT_HOST")
        if mqtt_host and "mqtt" not in overrides:
            try:
                config_kwargs["mqtt"] = MqttSettings(
                    host=mqtt_host,
                    port=int(env.get("LASTKNOWN_MQTT_PORT", "1883")),
                    username=env.get("LASTKNOWN_MQTT_USERNAME"),
                    password=env.get("LASTKNOWN_MQTT_PASSWORD"),
                    tls=_env_bool(env.get("LASTKNOWN_MQTT_TLS"), False),
                    keepalive=int(env.get("LASTKNOWN_MQTT_KEEPALIVE", "60")),
                    client_id=env.get("LASTKNOWN_MQTT_CLIENT_ID", "lastknown"),
                )
            except ValueError as exc:
                raise ConfigError(f"Invalid MQTT port/keepalive: {exc}") from exc

        config_kwargs.update(overrides)

        if "origin_url" not in config_kwargs:
            raise ConfigError("LASTKNOWN_ORIGIN_URL configuration is not present")

        return cls(**config_kwargs)
