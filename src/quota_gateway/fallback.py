# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Local records used when the metered upstream cannot answer.

A fallback source is a read path with no quota implications. Sources may
also ``remember`` successful upstream results so that later fallbacks have
something to return.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .clock import TimeSource
from .core.constants import LIB_LOGGER_NAME
from .db_models import LocalRecord

lib_logger = logging.getLogger(LIB_LOGGER_NAME)

MAX_SEARCH_TEXT = 4000


@dataclass(frozen=True)
class FallbackQuery:
    """Describes what a caller was looking for when the upstream failed."""

    operation: Optional[str] = None
    text: Optional[str] = None  # Free-text match
    record_key: Optional[str] = None  # Exact record id

    @classmethod
    def from_request(cls, operation: str, params: Optional[Dict[str, Any]]) -> "FallbackQuery":
        params = params or {}
        record_key = params.get("id")
        if isinstance(record_key, (list, tuple)):
            record_key = record_key[0] if len(record_key) == 1 else None
        text = params.get("q") or params.get("query")
        return cls(
            operation=operation,
            text=str(text) if text else None,
            record_key=str(record_key) if record_key else None,
        )


def extract_records(result: Any) -> List[Dict[str, Any]]:
    """Split an upstream result into individual records."""
    if isinstance(result, list):
        return [item for item in result if isinstance(item, dict)]
    if isinstance(result, dict):
        items = result.get("items")
        if isinstance(items, list):
            return [item for item in items if isinstance(item, dict)]
        return [result]
    return []


def record_key_of(record: Dict[str, Any]) -> Optional[str]:
    """Record id; nested ids such as ``{"kind": "video", "videoId": "x"}`` use the ``*Id`` field."""
    value = record.get("id")
    if isinstance(value, dict):
        value = next(
            (v for k, v in value.items() if k.endswith("Id") and isinstance(v, str) and v),
            None,
        )
    return str(value) if value else None


def searchable_text(record: Any) -> str:
    parts: List[str] = []

    def walk(value: Any) -> None:
        if isinstance(value, str):
            parts.append(value)
        elif isinstance(value, dict):
            for item in value.values():
                walk(item)
        elif isinstance(value, (list, tuple)):
            for item in value:
                walk(item)

    walk(record)
    return " ".join(parts)[:MAX_SEARCH_TEXT]


class FallbackSource(ABC):
    """Interface for the degraded read path."""

    @abstractmethod
    async def find_local_records(self, query: FallbackQuery, limit: int) -> List[Any]:
        """Return up to ``limit`` local records matching ``query``."""

    async def remember(self, operation: str, params: Dict[str, Any], result: Any) -> None:
        """Keep a successful upstream result for later fallbacks. Default: no-op."""
        return None


class NullFallbackSource(FallbackSource):
    """Fallback with no local data; every lookup is empty."""

    async def find_local_records(self, query: FallbackQuery, limit: int) -> List[Any]:
        return []


class StaticRecordSource(FallbackSource):
    """
    In-memory records, matched by operation, id and case-insensitive text.

    Useful for tests and for small curated datasets.
    """

    def __init__(self, records: Optional[Iterable[Dict[str, Any]]] = None, operation: Optional[str] = None):
        self._records: List[Dict[str, Any]] = []
        self.lookups = 0
        for record in records or ():
            self._records.append({"operation": operation, "record": record})

    async def find_local_records(self, query: FallbackQuery, limit: int) -> List[Any]:
        self.lookups += 1
        matches = []
        for item in reversed(self._records):
            if query.operation and item["operation"] not in (None, query.operation):
                continue
            record = item["record"]
            if query.record_key and record_key_of(record) != query.record_key:
                continue
            if query.text and query.text.lower() not in searchable_text(record).lower():
                continue
            matches.append(record)
            if len(matches) >= limit:
                break
        return matches

    async def remember(self, operation: str, params: Dict[str, Any], result: Any) -> None:
        for record in extract_records(result):
            key = record_key_of(record)
            if key is None:
                continue
            self._records = [
                item
                for item in self._records
                if not (item["operation"] == operation and record_key_of(item["record"]) == key)
            ]
            self._records.append({"operation": operation, "record": record})


class SQLRecordSource(FallbackSource):
    """
    Local records kept in the ``local_records`` table.

    Text queries match any string field of a record (case-insensitive);
    results are ordered by most recently updated first.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Optional[TimeSource] = None,
    ):
        self._session_maker = session_maker
        self._clock = clock or TimeSource()

    async def find_local_records(self, query: FallbackQuery, limit: int) -> List[Any]:
        statement = select(LocalRecord)
        if query.operation:
            statement = statement.where(LocalRecord.operation == query.operation)
        if query.record_key:
            statement = statement.where(LocalRecord.record_key == query.record_key)
        if query.text:
            terms = [term for term in query.text.split() if term]
            statement = statement.where(
                or_(*(LocalRecord.search_text.icontains(term, autoescape=True) for term in terms))
            )
        statement = statement.order_by(LocalRecord.updated_at.desc()).limit(limit)

        try:
            async with self._session_maker() as session:
                rows = (await session.scalars(statement)).all()
        except SQLAlchemyError as e:
            lib_logger.error(f"Error getting local records for fallback: {e}")
            return []

        records = []
        for row in rows:
            try:
                records.append(json.loads(row.payload))
            except ValueError as e:
                lib_logger.warning(f"Skipping undecodable local record {row.id}: {e}")
        return records

    async def remember(self, operation: str, params: Dict[str, Any], result: Any) -> None:
        records = extract_records(result)
        if not records:
            return
        now = self._clock.now()
        try:
            async with self._session_maker() as session:
                for record in records:
                    key = record_key_of(record)
                    if key is None:
                        continue
                    payload = json.dumps(record, default=str)
                    existing = await session.scalar(
                        select(LocalRecord).where(
                            LocalRecord.operation == operation,
                            LocalRecord.record_key == key,
                        )
                    )
                    if existing is None:
                        session.add(
                            LocalRecord(
                                operation=operation,
                                record_key=key,
                                search_text=searchable_text(record),
                                payload=payload,
                                updated_at=now,
                            )
                        )
                    else:
                        existing.payload = payload
                        existing.search_text = searchable_text(record)
                        existing.updated_at = now
                await session.commit()
        except SQLAlchemyError as e:
            lib_logger.error(f"Error saving {operation} records locally: {e}")
