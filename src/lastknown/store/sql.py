"""SQLAlchemy adapter implementing the durable singleton store."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from lastknown._constants import SINGLETON_ID
from lastknown._redact import redact_url
from lastknown.exceptions import StoreError, StoreErrorKind
from lastknown.models.record import Record
from lastknown.store.tables import latest_record_table, metadata

_logger = logging.getLogger(__name__)

_t = latest_record_table


def _expand_sqlite_path(url: str) -> str:
    """Expand ~ in SQLite URLs and make sure the parent directory exists."""
    if not url.startswith("sqlite") or "///" not in url:
        return url
    prefix_end = url.index("///") + 3
    path = url[prefix_end:]
    if not path or path == ":memory:":
        return url
    abs_path = os.path.abspath(os.path.expanduser(path))
    Path(abs_path).parent.mkdir(parents=True, exist_ok=True)
    return f"{url[:prefix_end]}{abs_path}"


def create_store_engine(database_url: str) -> AsyncEngine:
    """Create the process-wide async engine for *database_url*.

    SQLite files get their directory created; server databases get
    connection liveness checks on checkout.
    """
    url = _expand_sqlite_path(database_url)
    engine_kwargs: dict[str, Any] = {}
    if not url.startswith("sqlite"):
        engine_kwargs["pool_pre_ping"] = True
    _logger.debug("Durable store at %s", redact_url(url))
    return create_async_engine(url, **engine_kwargs)


class SqlDurableStore:
    """Single-row store for the latest record.

    Every method opens its own short transaction on the shared engine, so
    the store is safe for concurrent readers on the request path while a
    single worker writes.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create_schema(self) -> None:
        """Create the table if it does not exist yet."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except SQLAlchemyError as exc:
            raise StoreError(f"Schema creation failed: {exc}") from exc

    @staticmethod
    async def _select(conn: AsyncConnection) -> Record | None:
        stmt = select(_t.c.timestamp, _t.c.info).where(_t.c.id == SINGLETON_ID)
        row = (await conn.execute(stmt)).first()
        if row is None:
            return None
        timestamp, info = row
        return Record(timestamp=timestamp, payload=info)

    async def get_singleton(self) -> Record | None:
        """Read the stored record, ``None`` if nothing was persisted yet."""
        try:
            async with self._engine.connect() as conn:
                return await self._select(conn)
        except SQLAlchemyError as exc:
            raise StoreError(f"Reading the latest record failed: {exc}") from exc

    async def upsert_singleton(self, record: Record) -> None:
        """Insert the singleton row or overwrite it in place.

        No timestamp check happens here; callers decide with
        :func:`lastknown.policy.should_replace` first.
        """
        try:
            async with self._engine.begin() as conn:
                existing = await self._select(conn)
                if existing is None:
                    await conn.execute(
                        insert(_t).values(id=SINGLETON_ID, timestamp=record.timestamp, info=record.payload)
                    )
                else:
                    await conn.execute(
                        update(_t)
                        .where(_t.c.id == SINGLETON_ID)
                        .values(timestamp=record.timestamp, info=record.payload)
                    )
        except IntegrityError as exc:
            raise StoreError(f"Upsert violated a constraint: {exc}", kind=StoreErrorKind.CONSTRAINT) from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"Upsert failed: {exc}") from exc

    async def _update_if_older(self, record: Record) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(_t)
                .where(_t.c.id == SINGLETON_ID, _t.c.timestamp < record.timestamp)
                .values(timestamp=record.timestamp, info=record.payload)
            )
            return result.rowcount == 1

    async def replace_if_newer(self, record: Record) -> bool:
        """Atomically store *record* if it is strictly newer than the stored one.

        Compare-and-swap on the timestamp, safe with several concurrent
        writers. Returns ``True`` when the row was inserted or updated.
        """
        try:
            if await self._update_if_older(record):
                return True
            try:
                async with self._engine.begin() as conn:
                    await conn.execute(
                        insert(_t).values(id=SINGLETON_ID, timestamp=record.timestamp, info=record.payload)
                    )
                return True
            except IntegrityError:
                # Row exists: it was either newer already or inserted concurrently.
                return await self._update_if_older(record)
        except SQLAlchemyError as exc:
            raise StoreError(f"Conditional update failed: {exc}") from exc
