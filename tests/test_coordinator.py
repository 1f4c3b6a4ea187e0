"""Tests for the read-path fallback chain."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

import pytest

from lastknown.cache import MemoryCacheStore
from lastknown.channel import DeliveryCallback, DeliveryReport, MemoryEventChannel
from lastknown.coordinator import ReadCoordinator
from lastknown.exceptions import CacheError, FetchError, FetchErrorKind, StoreError
from lastknown.models import Record

CACHE_KEY = "LastInfo"
TOPIC = "observed"


def _rec(seconds: int, payload: str) -> Record:
    return Record(timestamp=datetime.fromtimestamp(seconds, tz=UTC), payload=payload)


@dataclass
class FakeFetcher:
    record: Record | None = None
    error: FetchError | None = None
    delay: float = 0.0
    calls: list[float | None] = field(default_factory=list)

    async def fetch(self, timeout: float | None = None) -> Record:
        self.calls.append(timeout)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.record is None:
            raise FetchError("no record configured", kind=FetchErrorKind.NETWORK)
        return self.record


@dataclass
class FakeCache:
    values: dict[str, bytes] = field(default_factory=dict)
    fail_get: bool = False
    fail_set: bool = False
    get_delay: float = 0.0
    set_delay: float = 0.0
    gets: int = 0

    async def get(self, key: str, *, timeout: float) -> bytes | None:
        self.gets += 1
        if self.get_delay:
            await asyncio.sleep(self.get_delay)
        if self.fail_get:
            raise CacheError("cache down")
        return self.values.get(key)

    async def set(self, key: str, value: bytes, *, timeout: float) -> None:
        if self.set_delay:
            await asyncio.sleep(self.set_delay)
        if self.fail_set:
            raise CacheError("cache down")
        self.values[key] = value


@dataclass
class FakeStore:
    record: Record | None = None
    fail: bool = False
    reads: int = 0

    async def get_singleton(self) -> Record | None:
        self.reads += 1
        if self.fail:
            raise StoreError("db down")
        return self.record

    async def upsert_singleton(self, record: Record) -> None:
        self.record = record

    async def replace_if_newer(self, record: Record) -> bool:
        self.record = record
        return True


@dataclass
class FailingChannel:
    reports: list[DeliveryReport] = field(default_factory=list)

    def publish(self, topic: str, value: bytes, *, on_delivery: DeliveryCallback | None = None) -> None:
        report = DeliveryReport(topic=topic, value=value, persisted=False, error="broker unavailable")
        if on_delivery is not None:
            asyncio.get_running_loop().call_soon(on_delivery, report)

    async def subscribe(self, topic: str, *, group: str):  # pragma: no cover - unused
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - unused
        return None


def _coordinator(
    fetcher: FakeFetcher,
    cache: FakeCache | MemoryCacheStore | None = None,
    store: FakeStore | None = None,
    channel: MemoryEventChannel | FailingChannel | None = None,
    **kwargs: float,
) -> ReadCoordinator:
    return ReadCoordinator(
        fetcher,
        cache if cache is not None else FakeCache(),
        store if store is not None else FakeStore(),
        channel if channel is not None else MemoryEventChannel(),
        cache_key=CACHE_KEY,
        topic=TOPIC,
        **kwargs,
    )


def _origin_down() -> FakeFetcher:
    return FakeFetcher(error=FetchError("connection refused", kind=FetchErrorKind.NETWORK))


# ------------------------------------------------------------------
# Fallback ordering
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_origin_success_is_returned_without_touching_fallbacks() -> None:
    cache = FakeCache()
    store = FakeStore(record=_rec(1, "stored"))
    coordinator = _coordinator(FakeFetcher(record=_rec(10, "fresh")), cache, store)

    assert await coordinator.get_latest() == "fresh"
    assert cache.gets == 0
    assert store.reads == 0
    await coordinator.drain()


@pytest.mark.asyncio
async def test_origin_failure_falls_back_to_cache() -> None:
    cache = FakeCache(values={CACHE_KEY: _rec(5, "V1").to_wire()})
    store = FakeStore(record=_rec(1, "V2"))
    coordinator = _coordinator(_origin_down(), cache, store)

    assert await coordinator.get_latest() == "V1"
    assert store.reads == 0


@pytest.mark.asyncio
async def test_origin_and_cache_failure_falls_back_to_store() -> None:
    cache = FakeCache(fail_get=True)
    store = FakeStore(record=_rec(1, "V2"))
    coordinator = _coordinator(_origin_down(), cache, store)

    assert await coordinator.get_latest() == "V2"


@pytest.mark.asyncio
async def test_empty_cache_falls_back_to_store() -> None:
    coordinator = _coordinator(_origin_down(), FakeCache(), FakeStore(record=_rec(1, "V2")))

    assert await coordinator.get_latest() == "V2"


@pytest.mark.asyncio
async def test_undecodable_cache_value_is_treated_as_absent() -> None:
    cache = FakeCache(values={CACHE_KEY: b"garbage"})
    coordinator = _coordinator(_origin_down(), cache, FakeStore(record=_rec(1, "V2")))

    assert await coordinator.get_latest() == "V2"


@pytest.mark.asyncio
async def test_all_sources_failing_returns_none() -> None:
    coordinator = _coordinator(_origin_down(), FakeCache(fail_get=True), FakeStore(fail=True))

    assert await coordinator.get_latest() is None


@pytest.mark.asyncio
async def test_nothing_known_anywhere_returns_none() -> None:
    coordinator = _coordinator(_origin_down(), FakeCache(), FakeStore())

    assert await coordinator.get_latest() is None


@pytest.mark.asyncio
async def test_fallback_failures_are_logged_as_warnings(caplog: pytest.LogCaptureFixture) -> None:
    coordinator = _coordinator(_origin_down(), FakeCache(fail_get=True), FakeStore(fail=True))

    with caplog.at_level(logging.WARNING, logger="lastknown.coordinator"):
        await coordinator.get_latest()

    messages = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any("fetching the latest value" in m for m in messages)
    assert any("from cache" in m for m in messages)
    assert any("durable store" in m for m in messages)


@pytest.mark.asyncio
async def test_negative_deadline_is_a_programmer_error() -> None:
    coordinator = _coordinator(_origin_down())

    with pytest.raises(ValueError):
        await coordinator.get_latest(deadline=-1)


# ------------------------------------------------------------------
# Deadlines
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_slow_origin_never_blocks_past_the_deadline() -> None:
    cache = FakeCache(values={CACHE_KEY: _rec(5, "V1").to_wire()})
    coordinator = _coordinator(FakeFetcher(record=_rec(10, "late"), delay=5.0), cache)
    loop = asyncio.get_running_loop()

    started = loop.time()
    result = await coordinator.get_latest(deadline=0.2)
    elapsed = loop.time() - started

    assert result in (None, "V1")
    assert elapsed < 0.5


@pytest.mark.asyncio
async def test_origin_is_offered_the_smaller_of_both_budgets() -> None:
    fetcher = _origin_down()
    coordinator = _coordinator(fetcher)

    await coordinator.get_latest(deadline=1.5)

    assert len(fetcher.calls) == 1
    assert fetcher.calls[0] is not None
    assert 0 < fetcher.calls[0] <= 1.5


@pytest.mark.asyncio
async def test_origin_timeout_inside_the_deadline_still_reaches_cache() -> None:
    fetcher = FakeFetcher(error=FetchError("timed out", kind=FetchErrorKind.TIMEOUT), delay=0.05)
    cache = FakeCache(values={CACHE_KEY: _rec(5, "V1").to_wire()})
    coordinator = _coordinator(fetcher, cache)

    assert await coordinator.get_latest(deadline=1.0) == "V1"


@pytest.mark.asyncio
async def test_hanging_cache_is_bounded_by_its_own_timeout() -> None:
    cache = FakeCache(values={CACHE_KEY: _rec(5, "V1").to_wire()}, get_delay=5.0)
    store = FakeStore(record=_rec(1, "V2"))
    coordinator = _coordinator(_origin_down(), cache, store, cache_timeout=0.05)
    loop = asyncio.get_running_loop()

    started = loop.time()
    result = await coordinator.get_latest(deadline=2.0)

    assert result == "V2"
    assert loop.time() - started < 0.5


@pytest.mark.asyncio
async def test_hanging_store_is_bounded_by_the_deadline() -> None:
    class HangingStore(FakeStore):
        async def get_singleton(self) -> Record | None:
            await asyncio.sleep(5)
            return None

    coordinator = _coordinator(_origin_down(), FakeCache(), HangingStore(), store_timeout=5.0)
    loop = asyncio.get_running_loop()

    started = loop.time()
    assert await coordinator.get_latest(deadline=0.1) is None
    assert loop.time() - started < 0.5


# ------------------------------------------------------------------
# Write-behind side effects
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_origin_success_writes_cache_and_publishes_in_background() -> None:
    record = _rec(1000, '{"temp":20}')
    cache = FakeCache(values={CACHE_KEY: _rec(900, '{"temp":18}').to_wire()})
    channel = MemoryEventChannel()
    coordinator = _coordinator(FakeFetcher(record=record), cache, channel=channel)

    assert await coordinator.get_latest() == '{"temp":20}'
    await coordinator.drain()

    assert Record.from_wire(cache.values[CACHE_KEY]) == record
    published = channel.messages(TOPIC)
    assert len(published) == 1
    assert json.loads(published[0])["info"] == '{"temp":20}'
    assert Record.from_wire(published[0]).timestamp == record.timestamp


@pytest.mark.asyncio
async def test_slow_cache_write_does_not_delay_the_response() -> None:
    cache = FakeCache(set_delay=0.2)
    coordinator = _coordinator(FakeFetcher(record=_rec(1, "fresh")), cache, cache_timeout=1.0)
    loop = asyncio.get_running_loop()

    started = loop.time()
    assert await coordinator.get_latest() == "fresh"
    assert loop.time() - started < 0.1
    assert coordinator.pending_background >= 1

    await coordinator.drain()
    assert coordinator.pending_background == 0
    assert CACHE_KEY in cache.values


@pytest.mark.asyncio
async def test_background_failures_never_reach_the_caller(caplog: pytest.LogCaptureFixture) -> None:
    cache = FakeCache(fail_set=True)
    coordinator = _coordinator(FakeFetcher(record=_rec(1, "fresh")), cache, channel=FailingChannel())

    with caplog.at_level(logging.WARNING, logger="lastknown.coordinator"):
        assert await coordinator.get_latest() == "fresh"
        await coordinator.drain()
        await asyncio.sleep(0)

    messages = [r.getMessage() for r in caplog.records]
    assert any("caching the latest value" in m for m in messages)
    assert any("Message delivery failed" in m for m in messages)


@pytest.mark.asyncio
async def test_cache_write_is_unconditional_last_arrival_wins() -> None:
    cache = MemoryCacheStore()
    newer = _rec(200, "newer")
    older = _rec(100, "older")

    first = _coordinator(FakeFetcher(record=newer), cache)
    await first.get_latest()
    await first.drain()
    second = _coordinator(FakeFetcher(record=older), cache)
    await second.get_latest()
    await second.drain()

    raw = await cache.get(CACHE_KEY, timeout=1.0)
    assert raw is not None
    assert Record.from_wire(raw) == older


@pytest.mark.asyncio
async def test_cached_value_with_out_of_range_timestamp_is_treated_as_absent() -> None:
    cache = FakeCache(values={CACHE_KEY: b'{"timestamp": 1e25, "info": "bad"}'})
    coordinator = _coordinator(_origin_down(), cache, FakeStore(record=_rec(1, "V2")))

    assert await coordinator.get_latest() == "V2"
