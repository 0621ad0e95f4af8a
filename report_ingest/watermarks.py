"""Durable per-category watermarks.

A watermark only ever moves forward: ``set`` with a high-water mark at
or before the stored one leaves the row untouched.
"""

from __future__ import annotations

import abc
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Database, FetchWatermark
from .models import Category, Watermark

logger = structlog.get_logger()


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite drops the offset)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class WatermarkStore(abc.ABC):
    """Read/advance watermarks for report categories."""

    @abc.abstractmethod
    async def get(self, category: Category) -> Watermark | None:
        """Return the stored watermark, or ``None`` if never ingested."""

    @abc.abstractmethod
    async def set(
        self,
        category: Category,
        high_water_mark: datetime,
        record_count: int,
        note: str = "",
        session: AsyncSession | None = None,
    ) -> bool:
        """Advance the watermark.  Returns ``False`` if the stored one is newer or equal.

        When *session* is given the write joins that session's open
        transaction, so it commits or rolls back with the caller's rows.
        """

    @abc.abstractmethod
    async def all(self) -> list[Watermark]:
        """Every stored watermark, ordered by category."""


class SqlWatermarkStore(WatermarkStore):
    """Watermarks in the ``fetch_watermarks`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def get(self, category: Category) -> Watermark | None:
        async with self._db.session() as session:
            row = await session.get(FetchWatermark, category.value)
            return _to_model(row) if row is not None else None

    async def set(
        self,
        category: Category,
        high_water_mark: datetime,
        record_count: int,
        note: str = "",
        session: AsyncSession | None = None,
    ) -> bool:
        high_water_mark = as_utc(high_water_mark)
        if session is not None:
            advanced = await _advance(session, category, high_water_mark, record_count, note)
        else:
            async with self._db.session() as own, own.begin():
                advanced = await _advance(own, category, high_water_mark, record_count, note)
        if not advanced:
            return False

        logger.info(
            "watermark_advanced",
            category=category.value,
            high_water_mark=high_water_mark.isoformat(),
            record_count=record_count,
        )
        return True

    async def all(self) -> list[Watermark]:
        async with self._db.session() as session:
            result = await session.execute(select(FetchWatermark).order_by(FetchWatermark.category))
            return [_to_model(row) for row in result.scalars().all()]


def _to_model(row: FetchWatermark) -> Watermark:
    return Watermark(
        category=Category(row.category),
        high_water_mark=as_utc(row.high_water_mark),
        record_count=row.record_count,
        note=row.note,
        updated_at=as_utc(row.updated_at),
    )


async def _advance(
    session: AsyncSession,
    category: Category,
    high_water_mark: datetime,
    record_count: int,
    note: str,
) -> bool:
    now = datetime.now(UTC)
    row = await session.get(FetchWatermark, category.value, with_for_update=True)
    if row is None:
        session.add(
            FetchWatermark(
                category=category.value,
                high_water_mark=high_water_mark,
                record_count=record_count,
                note=note,
                updated_at=now,
            )
        )
        return True
    if as_utc(row.high_water_mark) >= high_water_mark:
        logger.info(
            "watermark_not_advanced",
            category=category.value,
            stored=as_utc(row.high_water_mark).isoformat(),
            candidate=high_water_mark.isoformat(),
        )
        return False
    row.high_water_mark = high_water_mark
    row.record_count = record_count
    row.note = note
    row.updated_at = now
    return True
