"""Durable cache tier ORM model.

CacheEntryRecord: one row per cache key. The row is upserted on every write
(access_count survives rewrites) and touched on every hit. Expired rows stay
in place until the periodic sweep removes them, which is what lets the
warming scan find keys that were popular before they expired.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from framesense.database import Base


class CacheEntryRecord(Base):
    """Persisted cache entry.

    Attributes:
        cache_key: Cache key built by the key strategy (primary key)
        data: JSON text of the stored payload (possibly a compression envelope)
        compressed: True when data holds a gzip envelope
        service_type: Strategy id that produced the key (e.g. GOOGLE_VISION_WEB)
        created_at: First write timestamp (UTC)
        expires_at: Expiry timestamp (UTC); rows past it are misses
        access_count: Writes plus hits seen for this key
        last_accessed: Most recent read or write (UTC)
        data_size: Size of the stored data in bytes
        cost_saved: Accumulated estimated spend avoided by hits on this key
    """

    __tablename__ = "cache_storage"

    cache_key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        comment="Cache key built from the service strategy pattern",
    )
    data: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="JSON payload or compression envelope",
    )
    compressed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    service_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Strategy id that produced this key",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    access_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    last_accessed: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    data_size: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    cost_saved: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
    )

    __table_args__ = (
        Index("ix_cache_storage_expires_at", "expires_at"),
        Index("ix_cache_storage_access_count", "access_count"),
        Index("ix_cache_storage_service_type", "service_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<CacheEntryRecord key={self.cache_key} "
            f"service={self.service_type} hits={self.access_count}>"
        )
