"""Tests for report_ingest.handlers."""

from __future__ import annotations

from datetime import UTC, date, datetime
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from report_ingest.db import (
    Database,
    OrderRecord,
    RevenueCategoryRecord,
    SubscriptionRecord,
)
from report_ingest.errors import CategorySaveError
from report_ingest.handlers import (
    OrderHandler,
    SaveHandlerRegistry,
    default_registry,
)
from report_ingest.models import ALL_CATEGORIES, Category, DateRange
from report_ingest.watermarks import SqlWatermarkStore
from tests.conftest import write_report

WINDOW = DateRange(start=date(2025, 5, 1), end=date(2025, 6, 2))


@pytest.fixture
def watermarks(database: Database) -> SqlWatermarkStore:
    return SqlWatermarkStore(database)


@pytest.fixture
def registry(database: Database, watermarks: SqlWatermarkStore) -> SaveHandlerRegistry:
    return default_registry(database, watermarks)


async def _rows(database: Database, model) -> list:
    async with database.session() as session:
        return list((await session.execute(select(model))).scalars().all())


class TestRegistry:
    def test_every_category_has_a_handler(self, registry: SaveHandlerRegistry):
        assert set(registry.categories) == set(ALL_CATEGORIES)
        assert all(registry.get(c).category is c for c in ALL_CATEGORIES)

    def test_unknown_category(self):
        assert SaveHandlerRegistry().get(Category.ORDERS) is None


class TestSave:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("category", ALL_CATEGORIES)
    async def test_every_category_saves_sample(
        self,
        registry: SaveHandlerRegistry,
        watermarks: SqlWatermarkStore,
        category: Category,
        tmp_path: Path,
    ):
        path = write_report(tmp_path, category)
        count = await registry.get(category).save(path, WINDOW, snapshot_id="run-1")
        assert count >= 1
        assert await watermarks.get(category) is not None

    @pytest.mark.asyncio
    async def test_orders_persisted_and_watermark_is_max_timestamp(
        self,
        registry: SaveHandlerRegistry,
        database: Database,
        watermarks: SqlWatermarkStore,
        tmp_path: Path,
    ):
        path = write_report(tmp_path, Category.ORDERS)
        assert await registry.get(Category.ORDERS).save(path, WINDOW, snapshot_id="run-7") == 2

        rows = await _rows(database, OrderRecord)
        assert {r.code for r in rows} == {"A1", "A2"}
        assert {r.snapshot_id for r in rows} == {"run-7"}

        mark = await watermarks.get(Category.ORDERS)
        assert mark.high_water_mark == datetime(2025, 6, 1, 11, 15, tzinfo=UTC)
        assert mark.record_count == 2
        assert mark.note == "snapshot run-7"

    @pytest.mark.asyncio
    async def test_subscription_rows_tagged_by_category(
        self,
        registry: SaveHandlerRegistry,
        database: Database,
        tmp_path: Path,
    ):
        for category in (Category.ACTIVE_SUBSCRIPTIONS, Category.PAUSED_SUBSCRIPTIONS):
            await registry.get(category).save(write_report(tmp_path, category), WINDOW, snapshot_id="run-1")
        rows = await _rows(database, SubscriptionRecord)
        assert sorted(r.category for r in rows) == ["active_subscriptions", "paused_subscriptions"]

    @pytest.mark.asyncio
    async def test_canceled_watermark_uses_canceled_at(
        self,
        registry: SaveHandlerRegistry,
        watermarks: SqlWatermarkStore,
        tmp_path: Path,
    ):
        path = write_report(tmp_path, Category.CANCELED_SUBSCRIPTIONS)
        await registry.get(Category.CANCELED_SUBSCRIPTIONS).save(path, WINDOW, snapshot_id="run-1")
        mark = await watermarks.get(Category.CANCELED_SUBSCRIPTIONS)
        assert mark.high_water_mark == datetime(2025, 5, 31, 18, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_revenue_rows_tagged_with_window(
        self,
        registry: SaveHandlerRegistry,
        database: Database,
        watermarks: SqlWatermarkStore,
        tmp_path: Path,
    ):
        path = write_report(tmp_path, Category.REVENUE_CATEGORIES)
        await registry.get(Category.REVENUE_CATEGORIES).save(path, WINDOW, snapshot_id="run-1")

        (row,) = await _rows(database, RevenueCategoryRecord)
        assert (row.period_start, row.period_end) == (WINDOW.start, WINDOW.end)
        assert row.revenue == 5000.0
        assert row.platform_fees == 100.0
        assert row.processing_fees == 150.0
        assert row.other_fees == 15.0

        mark = await watermarks.get(Category.REVENUE_CATEGORIES)
        assert mark.high_water_mark == datetime(2025, 6, 2, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_empty_file_saves_nothing(
        self,
        registry: SaveHandlerRegistry,
        watermarks: SqlWatermarkStore,
        tmp_path: Path,
    ):
        path = tmp_path / "orders.csv"
        path.write_text("Created,Code,Total\n", encoding="utf-8")
        assert await registry.get(Category.ORDERS).save(path, WINDOW, snapshot_id="run-1") == 0
        assert await watermarks.get(Category.ORDERS) is None

    @pytest.mark.asyncio
    async def test_rows_without_timestamps_leave_watermark(
        self,
        registry: SaveHandlerRegistry,
        watermarks: SqlWatermarkStore,
        tmp_path: Path,
    ):
        path = tmp_path / "orders.csv"
        path.write_text("Code,Total\nA1,$5\n", encoding="utf-8")
        assert await registry.get(Category.ORDERS).save(path, WINDOW, snapshot_id="run-1") == 1
        assert await watermarks.get(Category.ORDERS) is None

    @pytest.mark.asyncio
    async def test_unreadable_file_raises_category_error(self, registry: SaveHandlerRegistry, tmp_path: Path):
        with pytest.raises(CategorySaveError) as exc_info:
            await registry.get(Category.ORDERS).save(tmp_path / "missing.csv", WINDOW, snapshot_id="run-1")
        assert exc_info.value.category is Category.ORDERS
        assert "cannot read missing.csv" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_storage_failure_rolls_back_and_keeps_watermark(
        self,
        database: Database,
        watermarks: SqlWatermarkStore,
        tmp_path: Path,
    ):
        class BrokenOrderHandler(OrderHandler):
            def to_records(self, rows, window, snapshot_id):
                records = super().to_records(rows, window, snapshot_id)
                records[-1].snapshot_id = None
                return records

        handler = BrokenOrderHandler(Category.ORDERS, database, watermarks)
        path = write_report(tmp_path, Category.ORDERS)
        with pytest.raises(CategorySaveError, match="storage write failed"):
            await handler.save(path, WINDOW, snapshot_id="run-1")
        assert await _rows(database, OrderRecord) == []
        assert await watermarks.get(Category.ORDERS) is None

    @pytest.mark.asyncio
    async def test_watermark_failure_rolls_back_rows(
        self,
        database: Database,
        watermarks: SqlWatermarkStore,
        tmp_path: Path,
    ):
        class LockedWatermarks(SqlWatermarkStore):
            async def set(self, *args, **kwargs):
                raise SQLAlchemyError("fetch_watermarks is locked")

        handler = OrderHandler(Category.ORDERS, database, LockedWatermarks(database))
        path = write_report(tmp_path, Category.ORDERS)
        with pytest.raises(CategorySaveError, match="fetch_watermarks is locked") as exc_info:
            await handler.save(path, WINDOW, snapshot_id="run-1")
        assert exc_info.value.category is Category.ORDERS
        assert await _rows(database, OrderRecord) == []
        assert await watermarks.get(Category.ORDERS) is None
