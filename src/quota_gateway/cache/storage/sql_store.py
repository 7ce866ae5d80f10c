# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
SQL-backed persistent cache tier (SQLAlchemy async).
"""

import logging
from typing import Iterable, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ...core.constants import LIB_LOGGER_NAME
from ...core.errors import CacheBackendError
from ...db import create_tables, init_db
from ...db_models import CacheRow
from .base import PersistentStore, StoredEntry, decode_tags, encode_tags

lib_logger = logging.getLogger(LIB_LOGGER_NAME)


class SQLCacheStore(PersistentStore):
    """
    Stores cache rows in the ``cache`` table.

    Either pass a ready ``session_maker`` (shared with the rest of an
    application) or a ``database_url``, in which case the store creates and
    owns its engine.
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        database_url: Optional[str] = None,
    ):
        if session_maker is None and database_url is None:
            raise ValueError("SQLCacheStore needs a session_maker or a database_url")
        self._session_maker = session_maker
        self._database_url = database_url
        self._engine: Optional[AsyncEngine] = None

    async def initialize(self) -> None:
        try:
            if self._session_maker is None:
                self._engine, self._session_maker = await init_db(self._database_url)
            else:
                engine = self._session_maker.kw.get("bind")
                if engine is not None:
                    await create_tables(engine)
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Failed to initialize cache table: {e}") from e

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            raise CacheBackendError("SQLCacheStore used before initialize()")
        return self._session_maker

    @staticmethod
    def _to_entry(row: CacheRow) -> StoredEntry:
        return StoredEntry(
            key=row.key,
            data=row.data,
            expires_at=row.expires_at,
            tags=decode_tags(row.tags),
            created_at=row.created_at,
            access_count=row.access_count,
            last_accessed_at=row.last_accessed,
        )

    async def upsert(self, entry: StoredEntry) -> None:
        values = dict(
            data=entry.data,
            expires_at=entry.expires_at,
            tags=encode_tags(entry.tags),
            created_at=entry.created_at,
            access_count=0,
            last_accessed=entry.created_at,
        )
        try:
            async with self._sessions()() as session:
                row = await session.get(CacheRow, entry.key)
                if row is None:
                    session.add(CacheRow(key=entry.key, **values))
                else:
                    for name, value in values.items():
                        setattr(row, name, value)
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost an insert race to a concurrent writer; overwrite it
                    await session.rollback()
                    await session.execute(
                        update(CacheRow).where(CacheRow.key == entry.key).values(**values)
                    )
                    await session.commit()
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Failed to write cache row '{entry.key}': {e}") from e

    async def find(self, key: str) -> Optional[StoredEntry]:
        try:
            async with self._sessions()() as session:
                row = await session.get(CacheRow, key)
                return self._to_entry(row) if row is not None else None
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Failed to read cache row '{key}': {e}") from e

    async def touch(self, key: str, accessed_at: float) -> None:
        try:
            async with self._sessions()() as session:
                await session.execute(
                    update(CacheRow)
                    .where(CacheRow.key == key)
                    .values(
                        access_count=CacheRow.access_count + 1,
                        last_accessed=accessed_at,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Failed to update access stats for '{key}': {e}") from e

    async def delete(self, key: str, expired_before: Optional[float] = None) -> bool:
        statement = delete(CacheRow).where(CacheRow.key == key)
        if expired_before is not None:
            statement = statement.where(CacheRow.expires_at <= expired_before)
        try:
            async with self._sessions()() as session:
                result = await session.execute(statement)
                await session.commit()
                return bool(result.rowcount)
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Failed to delete cache row '{key}': {e}") from e

    async def delete_many(
        self,
        *,
        tags: Optional[Iterable[str]] = None,
        prefix: Optional[str] = None,
        expired_before: Optional[float] = None,
        delete_all: bool = False,
    ) -> int:
        conditions = []
        for tag in tags or ():
            conditions.append(CacheRow.tags.contains(f",{tag},", autoescape=True))
        if prefix is not None:
            conditions.append(CacheRow.key.startswith(prefix, autoescape=True))
        if expired_before is not None:
            conditions.append(CacheRow.expires_at <= expired_before)

        if not conditions and not delete_all:
            return 0

        statement = delete(CacheRow)
        if not delete_all:
            statement = statement.where(or_(*conditions))

        try:
            async with self._sessions()() as session:
                result = await session.execute(statement)
                await session.commit()
                deleted = result.rowcount if result.rowcount is not None else 0
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Failed to delete cache rows: {e}") from e
        return deleted

    async def count_and_aggregate(self) -> Tuple[int, int]:
        try:
            async with self._sessions()() as session:
                result = await session.execute(
                    select(
                        func.count(CacheRow.key),
                        func.coalesce(func.sum(CacheRow.access_count), 0),
                    )
                )
                count, accesses = result.one()
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Failed to aggregate cache rows: {e}") from e
        return int(count or 0), int(accesses or 0)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
