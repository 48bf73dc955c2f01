"""Durable cache tier.

Defines the DurableStore ABC and two implementations:
- SqlDurableStore: rows in the cache_storage table via SQLAlchemy async
- InMemoryDurableStore: dict-backed rows with wall-clock expiry, for tests/dev

Rows are keyed by cache key and carry usage statistics (access_count,
last_accessed, cost_saved). Expired rows are treated as misses but are only
physically removed by purge_expired(), so the warming scan can still see
which expired keys used to be popular.
"""

from __future__ import annotations

import fnmatch
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import delete, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from framesense.errors import CacheUnavailable
from framesense.models.cache_entry import CacheEntryRecord

log = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    # SQLite returns naive datetimes; everything is stored as UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def glob_to_like(pattern: str) -> str:
    """Translate a glob-style key pattern into the equivalent SQL LIKE pattern.

    Literal % and _ are escaped with a backslash; * becomes % and ? becomes _.
    """
    out = []
    for ch in pattern:
        if ch in ("%", "_", "\\"):
            out.append("\\" + ch)
        elif ch == "*":
            out.append("%")
        elif ch == "?":
            out.append("_")
        else:
            out.append(ch)
    return "".join(out)


@dataclass(frozen=True)
class DurableRow:
    """Snapshot of a durable cache row."""
    key: str
    data: str
    compressed: bool
    service_type: str
    created_at: datetime
    expires_at: datetime
    access_count: int
    last_accessed: datetime
    data_size: int
    cost_saved: float = 0.0

    @property
    def remaining_ttl(self) -> int:
        """Seconds until expiry, never below zero."""
        return max(0, int((_aware(self.expires_at) - _utcnow()).total_seconds()))


@dataclass(frozen=True)
class WarmingCandidate:
    """Expired key that was accessed often enough to be worth re-populating."""
    key: str
    service_type: str
    access_count: int
    expired_at: datetime


class DurableStore(ABC):
    """Abstract interface for the durable tier."""

    @abstractmethod
    async def get(self, key: str, *, cost_saved: float = 0.0) -> DurableRow | None:
        """Return the live row for key and record the hit, or None."""

    @abstractmethod
    async def upsert(
        self,
        key: str,
        data: str,
        *,
        compressed: bool,
        service_type: str,
        ttl: int,
    ) -> None:
        """Insert or overwrite the row for key, extending its expiry."""

    @abstractmethod
    async def delete_like(self, pattern: str) -> int:
        """Delete rows whose key matches a glob pattern. Returns deleted count."""

    @abstractmethod
    async def keys_like(self, pattern: str, limit: int) -> list[str]:
        """Return up to limit live keys matching a glob pattern."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete rows past expires_at. Returns deleted count."""

    @abstractmethod
    async def popular_expired(self, min_access: int, limit: int) -> list[WarmingCandidate]:
        """Return expired rows with access_count >= min_access, busiest first."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the store is reachable."""

    async def clear(self) -> int:
        """Remove every row. Returns deleted count."""
        return await self.delete_like("*")

    async def close(self) -> None:
        """Release resources held by the store."""


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------


def _row_from_record(record: CacheEntryRecord) -> DurableRow:
    return DurableRow(
        key=record.cache_key,
        data=record.data,
        compressed=record.compressed,
        service_type=record.service_type,
        created_at=_aware(record.created_at),
        expires_at=_aware(record.expires_at),
        access_count=record.access_count,
        last_accessed=_aware(record.last_accessed),
        data_size=record.data_size,
        cost_saved=record.cost_saved,
    )


class SqlDurableStore(DurableStore):
    """Durable tier backed by the cache_storage table.

    Every method opens its own short transaction from the injected session
    factory. Database errors are re-raised as CacheUnavailable so the tiered
    store can degrade to pass-through.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str, *, cost_saved: float = 0.0) -> DurableRow | None:
        now = _utcnow()
        try:
            async with self._session_factory() as session:
                stmt = (
                    select(CacheEntryRecord)
                    .where(
                        CacheEntryRecord.cache_key == key,
                        CacheEntryRecord.expires_at > now,
                    )
                    .with_for_update()
                )
                record = (await session.execute(stmt)).scalar_one_or_none()
                if record is None:
                    return None
                record.access_count += 1
                record.last_accessed = now
                record.cost_saved += cost_saved
                row = _row_from_record(record)
                await session.commit()
                return row
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"durable get failed: {exc}") from exc

    async def upsert(
        self,
        key: str,
        data: str,
        *,
        compressed: bool,
        service_type: str,
        ttl: int,
    ) -> None:
        now = _utcnow()
        expires_at = now + timedelta(seconds=ttl)
        size = len(data.encode("utf-8"))
        try:
            async with self._session_factory() as session:
                stmt = (
                    select(CacheEntryRecord)
                    .where(CacheEntryRecord.cache_key == key)
                    .with_for_update()
                )
                record = (await session.execute(stmt)).scalar_one_or_none()
                if record is None:
                    session.add(
                        CacheEntryRecord(
                            cache_key=key,
                            data=data,
                            compressed=compressed,
                            service_type=service_type,
                            created_at=now,
                            expires_at=expires_at,
                            access_count=1,
                            last_accessed=now,
                            data_size=size,
                            cost_saved=0.0,
                        )
                    )
                else:
                    record.data = data
                    record.compressed = compressed
                    record.service_type = service_type
                    record.expires_at = expires_at
                    record.access_count += 1
                    record.last_accessed = now
                    record.data_size = size
                await session.commit()
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"durable upsert failed: {exc}") from exc

    async def delete_like(self, pattern: str) -> int:
        like = glob_to_like(pattern)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(CacheEntryRecord).where(
                        CacheEntryRecord.cache_key.like(like, escape="\\")
                    )
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"durable delete failed: {exc}") from exc

    async def keys_like(self, pattern: str, limit: int) -> list[str]:
        like = glob_to_like(pattern)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CacheEntryRecord.cache_key)
                    .where(
                        CacheEntryRecord.cache_key.like(like, escape="\\"),
                        CacheEntryRecord.expires_at > _utcnow(),
                    )
                    .order_by(CacheEntryRecord.access_count.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"durable key scan failed: {exc}") from exc

    async def purge_expired(self) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(CacheEntryRecord).where(
                        CacheEntryRecord.expires_at <= _utcnow()
                    )
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"durable purge failed: {exc}") from exc

    async def popular_expired(self, min_access: int, limit: int) -> list[WarmingCandidate]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(
                        CacheEntryRecord.cache_key,
                        CacheEntryRecord.service_type,
                        CacheEntryRecord.access_count,
                        CacheEntryRecord.expires_at,
                    )
                    .where(
                        CacheEntryRecord.expires_at <= _utcnow(),
                        CacheEntryRecord.access_count >= min_access,
                    )
                    .order_by(CacheEntryRecord.access_count.desc())
                    .limit(limit)
                )
                return [
                    WarmingCandidate(
                        key=row.cache_key,
                        service_type=row.service_type,
                        access_count=row.access_count,
                        expired_at=_aware(row.expires_at),
                    )
                    for row in result.all()
                ]
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"durable warming scan failed: {exc}") from exc

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            log.warning("cache.durable.ping_failed", error=str(exc))
            return False


# ---------------------------------------------------------------------------
# In-memory backend (testing / dev fallback)
# ---------------------------------------------------------------------------


class InMemoryDurableStore(DurableStore):
    """Dict-backed durable tier with the same expiry semantics as the SQL store.

    Single-statement dict operations only, so no lock is needed on one event
    loop. `available` can be flipped off in tests to simulate an outage.
    """

    def __init__(self) -> None:
        self._rows: dict[str, DurableRow] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise CacheUnavailable("in-memory durable store disabled")

    async def get(self, key: str, *, cost_saved: float = 0.0) -> DurableRow | None:
        self._check()
        row = self._rows.get(key)
        now = _utcnow()
        if row is None or row.expires_at <= now:
            return None
        row = replace(
            row,
            access_count=row.access_count + 1,
            last_accessed=now,
            cost_saved=row.cost_saved + cost_saved,
        )
        self._rows[key] = row
        return row

    async def upsert(
        self,
        key: str,
        data: str,
        *,
        compressed: bool,
        service_type: str,
        ttl: int,
    ) -> None:
        self._check()
        now = _utcnow()
        existing = self._rows.get(key)
        self._rows[key] = DurableRow(
            key=key,
            data=data,
            compressed=compressed,
            service_type=service_type,
            created_at=existing.created_at if existing else now,
            expires_at=now + timedelta(seconds=ttl),
            access_count=(existing.access_count + 1) if existing else 1,
            last_accessed=now,
            data_size=len(data.encode("utf-8")),
            cost_saved=existing.cost_saved if existing else 0.0,
        )

    async def delete_like(self, pattern: str) -> int:
        self._check()
        doomed = [k for k in self._rows if fnmatch.fnmatchcase(k, pattern)]
        for k in doomed:
            del self._rows[k]
        return len(doomed)

    async def keys_like(self, pattern: str, limit: int) -> list[str]:
        self._check()
        now = _utcnow()
        live = [
            row for row in self._rows.values()
            if row.expires_at > now and fnmatch.fnmatchcase(row.key, pattern)
        ]
        live.sort(key=lambda r: r.access_count, reverse=True)
        return [row.key for row in live[:limit]]

    async def purge_expired(self) -> int:
        self._check()
        now = _utcnow()
        doomed = [k for k, row in self._rows.items() if row.expires_at <= now]
        for k in doomed:
            del self._rows[k]
        return len(doomed)

    async def popular_expired(self, min_access: int, limit: int) -> list[WarmingCandidate]:
        self._check()
        now = _utcnow()
        rows = sorted(
            (
                row for row in list(self._rows.values())
                if row.expires_at <= now and row.access_count >= min_access
            ),
            key=lambda r: r.access_count,
            reverse=True,
        )
        return [
            WarmingCandidate(
                key=row.key,
                service_type=row.service_type,
                access_count=row.access_count,
                expired_at=row.expires_at,
            )
            for row in rows[:limit]
        ]

    async def ping(self) -> bool:
        return self.available

    def force_expire(self, key: str) -> None:
        """Move a row's expiry into the past (test helper for sweep/warming)."""
        row = self._rows[key]
        self._rows[key] = replace(row, expires_at=_utcnow() - timedelta(seconds=1))
