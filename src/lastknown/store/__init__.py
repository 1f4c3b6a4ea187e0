"""Durable store layer.

The durable store keeps the single authoritative latest record. Its stored
timestamp never moves backwards; only the persistence worker writes to it.
"""

from __future__ import annotations

from typing import Protocol

from lastknown.models.record import Record
from lastknown.store.sql import SqlDurableStore, create_store_engine


class DurableStore(Protocol):
    """Persistent single-row capability."""

    async def get_singleton(self) -> Record | None:
        ...

    async def upsert_singleton(self, record: Record) -> None:
        ...

    async def replace_if_newer(self, record: Record) -> bool:
        ...


__all__ = [
    "DurableStore",
    "SqlDurableStore",
    "create_store_engine",
]
