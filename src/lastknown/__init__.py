"""lastknown - Async latest-known-value service with read fallback and write-behind persistence."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("lastknown")
except PackageNotFoundError:
    __version__ = "0+local"
from lastknown.cache import CacheStore, MemoryCacheStore, RedisCacheStore
from lastknown.channel import (
    ChannelMessage,
    DeliveryReport,
    EventChannel,
    MemoryEventChannel,
    MqttEventChannel,
    Subscription,
)
from lastknown.config import LastKnownConfig, MqttSettings
from lastknown.coordinator import ReadCoordinator
from lastknown.exceptions import (
    CacheError,
    CacheErrorKind,
    ChannelError,
    ChannelErrorKind,
    ConfigError,
    FetchError,
    FetchErrorKind,
    LastKnownError,
    RecordDecodeError,
    StoreError,
    StoreErrorKind,
)
from lastknown.models import Record
from lastknown.origin import OriginFetcher
from lastknown.policy import should_replace
from lastknown.service import LastKnownService
from lastknown.store import DurableStore, SqlDurableStore
from lastknown.worker import PersistenceWorker, WorkerState, WorkerStatus

__all__ = [
    "__version__",
    "CacheError",
    "CacheErrorKind",
    "CacheStore",
    "ChannelError",
    "ChannelErrorKind",
    "ChannelMessage",
    "ConfigError",
    "DeliveryReport",
    "DurableStore",
    "EventChannel",
    "FetchError",
    "FetchErrorKind",
    "LastKnownConfig",
    "LastKnownError",
    "LastKnownService",
    "MemoryCacheStore",
    "MemoryEventChannel",
    "MqttEventChannel",
    "MqttSettings",
    "OriginFetcher",
    "PersistenceWorker",
    "ReadCoordinator",
    "Record",
    "RecordDecodeError",
    "RedisCacheStore",
    "SqlDurableStore",
    "StoreError",
    "StoreErrorKind",
    "Subscription",
    "WorkerState",
    "WorkerStatus",
    "should_replace",
]
