from __future__ import annotations

import os

import pytest

from lastknown.config import LastKnownConfig, MqttSettings
from lastknown.exceptions import ConfigError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("LASTKNOWN_"):
            monkeypatch.delenv(key, raising=False)


def test_defaults_follow_the_degraded_path_budget() -> None:
    config = LastKnownConfig(origin_url="http://origin.local/")

    assert config.cache_timeout < config.origin_timeout < config.request_deadline
    assert config.cache_key == "LastInfo"
    assert config.mqtt is None
    assert config.redis_url is None


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LASTKNOWN_ORIGIN_URL", "http://weather.local/now")
    monkeypatch.setenv("LASTKNOWN_ORIGIN_TIMEOUT", "2.5")
    monkeypatch.setenv("LASTKNOWN_CACHE_TIMEOUT", "0.5")
    monkeypatch.setenv("LASTKNOWN_REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("LASTKNOWN_TOPIC", "weather-info-fetched")
    monkeypatch.setenv("LASTKNOWN_CONDITIONAL_UPDATE", "yes")

    config = LastKnownConfig.from_env()

    assert config.origin_url == "http://weather.local/now"
    assert config.origin_timeout == 2.5
    assert config.cache_timeout == 0.5
    assert config.redis_url == "redis://cache:6379/0"
    assert config.topic == "weather-info-fetched"
    assert config.conditional_update is True
    assert config.cache_precheck is False


def test_explicit_overrides_win_over_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LASTKNOWN_ORIGIN_URL", "http://env.local/")
    monkeypatch.setenv("LASTKNOWN_ORIGIN_TIMEOUT", "9")
    monkeypatch.setenv("LASTKNOWN_TOPIC", "env-topic")
    monkeypatch.setenv("LASTKNOWN_CACHE_PRECHECK", "1")

    config = LastKnownConfig.from_env(
        origin_url="http://override.local/",
        origin_timeout=1.0,
        topic="override-topic",
        cache_precheck=False,
    )

    assert config.origin_url == "http://override.local/"
    assert config.origin_timeout == 1.0
    assert config.topic == "override-topic"
    assert config.cache_precheck is False


def test_from_env_builds_mqtt_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LASTKNOWN_ORIGIN_URL", "http://origin.local/")
    monkeypatch.setenv("LASTKNOWN_MQTT_HOST", "broker.local")
    monkeypatch.setenv("LASTKNOWN_MQTT_PORT", "8883")
    monkeypatch.setenv("LASTKNOWN_MQTT_TLS", "1")
    monkeypatch.setenv("LASTKNOWN_MQTT_CLIENT_ID", "storage-1")

    config = LastKnownConfig.from_env()

    assert config.mqtt == MqttSettings(host="broker.local", port=8883, tls=True, client_id="storage-1")


def test_missing_origin_url_is_a_config_error() -> None:
    with pytest.raises(ConfigError, match="LASTKNOWN_ORIGIN_URL"):
        LastKnownConfig.from_env()


def test_non_numeric_timeout_is_a_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LASTKNOWN_ORIGIN_URL", "http://origin.local/")
    monkeypatch.setenv("LASTKNOWN_CACHE_TIMEOUT", "fast")

    with pytest.raises(ConfigError, match="LASTKNOWN_CACHE_TIMEOUT"):
        LastKnownConfig.from_env()


@pytest.mark.parametrize("field", ["origin_timeout", "cache_timeout", "store_timeout", "request_deadline"])
def test_non_positive_timeouts_are_rejected(field: str) -> None:
    with pytest.raises(ConfigError, match=field):
        LastKnownConfig(origin_url="http://origin.local/", **{field: 0})
