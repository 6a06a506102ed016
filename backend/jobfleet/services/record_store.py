"""Versioned record store — the only persistence seam the engine depends on.

Contract
--------
``get(id)``                                   → ``Versioned`` or ``None``
``list(filter)``                              → lazy async iterator of ``Versioned``
``insert(id, document)``                      → ``WriteResult`` (``conflict`` if it exists)
``write_if_revision_matches(id, rev, doc)``   → ``WriteResult`` ok / conflict / not_found
``delete_if_revision_matches(id, rev)``       → ``WriteResult`` ok / conflict / not_found

Documents are flat dicts of column values.  Each successful write replaces the
record's revision with a fresh opaque token; a write that names a stale
revision matches zero rows and reports ``conflict``.  There is no locking —
every mutation is a single conditional statement.

``SqlRecordStore`` implements the contract for one ORM table.  ``list`` pages
through the table by primary key, opening a short session per page, so no
transaction stays open while the caller awaits other store calls between
items.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Collection, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from sqlalchemy import delete, inspect, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobfleet.errors import StoreUnavailableError

logger = logging.getLogger("jobfleet.store")

T = TypeVar("T")


def new_revision() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Versioned(Generic[T]):
    """A record paired with the store revision it was read at."""

    record: T
    revision: str


class WriteStatus(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class WriteResult:
    status: WriteStatus
    revision: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == WriteStatus.OK

    @property
    def conflict(self) -> bool:
        return self.status == WriteStatus.CONFLICT

    @property
    def not_found(self) -> bool:
        return self.status == WriteStatus.NOT_FOUND


@dataclass(frozen=True)
class RecordFilter:
    """Field predicates combined with AND.

    ``equals``  field == value
    ``one_of``  field IN values
    ``before``  field < value
    """

    equals: Mapping[str, Any] = field(default_factory=dict)
    one_of: Mapping[str, Collection[Any]] = field(default_factory=dict)
    before: Mapping[str, Any] = field(default_factory=dict)


class RecordStore(ABC):
    """Abstract versioned document store for a single record type."""

    @abstractmethod
    async def get(self, record_id: str) -> Versioned[dict[str, Any]] | None:
        ...

    @abstractmethod
    def list(self, record_filter: RecordFilter | None = None) -> AsyncIterator[Versioned[dict[str, Any]]]:
        ...

    @abstractmethod
    async def insert(self, record_id: str, document: dict[str, Any]) -> WriteResult:
        ...

    @abstractmethod
    async def write_if_revision_matches(
        self, record_id: str, expected_revision: str, document: dict[str, Any]
    ) -> WriteResult:
        ...

    @abstractmethod
    async def delete_if_revision_matches(self, record_id: str, expected_revision: str) -> WriteResult:
        ...


def _as_utc(value: Any) -> Any:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlRecordStore(RecordStore):
    """``RecordStore`` over one SQLAlchemy ORM table with a ``revision`` column."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        model: type,
        *,
        page_size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._model = model
        mapper = inspect(model)
        (self._key,) = mapper.primary_key
        self._key_name = self._key.key
        self._columns = [c.key for c in mapper.columns if c.key != "revision"]
        self._page_size = page_size

    # ── Helpers ───────────────────────────────────────────────

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.warning("Record store %s unavailable: %s", self._model.__tablename__, exc)
            raise StoreUnavailableError(str(exc)) from exc

    def _document(self, row: Any) -> dict[str, Any]:
        return {name: _as_utc(getattr(row, name)) for name in self._columns}

    def _versioned(self, row: Any) -> Versioned[dict[str, Any]]:
        return Versioned(record=self._document(row), revision=row.revision)

    def _values(self, document: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in document.items() if k in self._columns and k != self._key_name}

    def _criteria(self, record_filter: RecordFilter | None) -> list[Any]:
        if record_filter is None:
            return []
        criteria = []
        for name, value in record_filter.equals.items():
            criteria.append(getattr(self._model, name) == value)
        for name, values in record_filter.one_of.items():
            criteria.append(getattr(self._model, name).in_(list(values)))
        for name, value in record_filter.before.items():
            criteria.append(getattr(self._model, name) < value)
        return criteria

    async def _exists(self, db: AsyncSession, record_id: str) -> bool:
        found = await db.scalar(select(self._key).where(self._key == record_id))
        return found is not None

    # ── Contract ──────────────────────────────────────────────

    async def get(self, record_id: str) -> Versioned[dict[str, Any]] | None:
        async with self._session() as db:
            row = await db.get(self._model, record_id)
            return self._versioned(row) if row is not None else None

    async def _fetch_page(self, criteria: list[Any], after: Any) -> list[Versioned[dict[str, Any]]]:
        stmt = select(self._model).where(*criteria).order_by(self._key).limit(self._page_size)
        if after is not None:
            stmt = stmt.where(self._key > after)
        async with self._session() as db:
            result = await db.execute(stmt)
            return [self._versioned(row) for row in result.scalars().all()]

    async def list(self, record_filter: RecordFilter | None = None) -> AsyncIterator[Versioned[dict[str, Any]]]:
        criteria = self._criteria(record_filter)
        after = None
        while True:
            page = await self._fetch_page(criteria, after)
            for item in page:
                yield item
            if len(page) < self._page_size:
                return
            after = page[-1].record[self._key_name]

    async def insert(self, record_id: str, document: dict[str, Any]) -> WriteResult:
        revision = new_revision()
        row = self._model(**{**self._values(document), self._key_name: record_id, "revision": revision})
        async with self._session() as db:
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return WriteResult(WriteStatus.CONFLICT)
        return WriteResult(WriteStatus.OK, revision)

    async def write_if_revision_matches(
        self, record_id: str, expected_revision: str, document: dict[str, Any]
    ) -> WriteResult:
        revision = new_revision()
        stmt = (
            update(self._model)
            .where(self._key == record_id, self._model.revision == expected_revision)
            .values(**self._values(document), revision=revision)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            if result.rowcount == 1:
                await db.commit()
                return WriteResult(WriteStatus.OK, revision)
            exists = await self._exists(db, record_id)
            await db.rollback()
        return WriteResult(WriteStatus.CONFLICT if exists else WriteStatus.NOT_FOUND)

    async def delete_if_revision_matches(self, record_id: str, expected_revision: str) -> WriteResult:
        stmt = delete(self._model).where(
            self._key == record_id, self._model.revision == expected_revision
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            if result.rowcount == 1:
                await db.commit()
                return WriteResult(WriteStatus.OK)
            exists = await self._exists(db, record_id)
            await db.rollback()
        return WriteResult(WriteStatus.CONFLICT if exists else WriteStatus.NOT_FOUND)
