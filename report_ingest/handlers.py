"""Per-category save handlers: parse, transform, persist, advance watermark."""

from __future__ import annotations

import abc
import asyncio
import csv
from collections.abc import Iterable
from datetime import UTC, datetime, time
from pathlib import Path
from typing import Generic

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .db import (
    Base,
    CustomerRecord,
    Database,
    FirstVisitRecord,
    OrderRecord,
    RegistrationRecord,
    RevenueCategoryRecord,
    SubscriptionRecord,
)
from .errors import CategorySaveError
from .models import SUBSCRIPTION_CATEGORIES, Category, DateRange
from .parsing import (
    CustomerRow,
    FirstVisitRow,
    OrderRow,
    RegistrationRow,
    RevenueCategoryRow,
    RowT,
    SubscriptionRow,
    parse_csv,
)
from .watermarks import WatermarkStore

logger = structlog.get_logger()


class CategorySaveHandler(abc.ABC, Generic[RowT]):
    """Save one category's report file.

    Subclasses declare the row model and how rows map to ORM records;
    :meth:`save` does the rest.  All rows of a file and the watermark
    advance are written in one transaction, so a failure leaves nothing
    behind for that category.
    """

    row_model: type[RowT]

    def __init__(self, category: Category, database: Database, watermarks: WatermarkStore) -> None:
        self.category = category
        self._db = database
        self._watermarks = watermarks

    @abc.abstractmethod
    def to_records(self, rows: list[RowT], window: DateRange, snapshot_id: str) -> list[Base]:
        """Transform validated rows into ORM records."""

    @abc.abstractmethod
    def timestamp_of(self, record: Base) -> datetime | None:
        """The record's timestamp used for watermark advancement."""

    async def save(self, path: Path, window: DateRange, *, snapshot_id: str) -> int:
        """Persist *path* and return the number of records written.

        Raises :class:`CategorySaveError` for unreadable files and
        storage failures.
        """
        log = logger.bind(category=self.category.value, path=str(path))
        try:
            parsed = await asyncio.to_thread(parse_csv, path, self.row_model)
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            raise CategorySaveError(self.category, f"cannot read {path.name}: {exc}") from exc

        for warning in parsed.warnings:
            log.warning("csv_row_rejected", detail=warning)

        if not parsed.rows:
            log.info("category_file_empty")
            return 0

        records = self.to_records(parsed.rows, window, snapshot_id)
        high_water_mark = _latest(self.timestamp_of(r) for r in records)
        try:
            async with self._db.session() as session, session.begin():
                session.add_all(records)
                await session.flush()
                if high_water_mark is not None:
                    await self._watermarks.set(
                        self.category,
                        high_water_mark,
                        len(records),
                        note=f"snapshot {snapshot_id}",
                        session=session,
                    )
        except SQLAlchemyError as exc:
            raise CategorySaveError(self.category, f"storage write failed: {exc}") from exc

        log.info("category_saved", records=len(records), high_water_mark=high_water_mark)
        return len(records)


def _latest(values: Iterable[datetime | None]) -> datetime | None:
    present = [v for v in values if v is not None]
    return max(present) if present else None


class CustomerHandler(CategorySaveHandler[CustomerRow]):
    row_model = CustomerRow

    def to_records(self, rows, window, snapshot_id):
        return [
            CustomerRecord(
                snapshot_id=snapshot_id,
                name=r.name,
                email=r.email,
                role=r.role,
                orders=r.orders,
                created_at=r.created,
            )
            for r in rows
        ]

    def timestamp_of(self, record):
        return record.created_at


class OrderHandler(CategorySaveHandler[OrderRow]):
    row_model = OrderRow

    def to_records(self, rows, window, snapshot_id):
        return [
            OrderRecord(
                snapshot_id=snapshot_id,
                created_at=r.created,
                code=r.code,
                customer=r.customer,
                email=r.email,
                order_type=r.type,
                payment=r.payment,
                total=r.total,
            )
            for r in rows
        ]

    def timestamp_of(self, record):
        return record.created_at


class FirstVisitHandler(CategorySaveHandler[FirstVisitRow]):
    row_model = FirstVisitRow

    def to_records(self, rows, window, snapshot_id):
        return [
            FirstVisitRecord(
                snapshot_id=snapshot_id,
                attendee=r.attendee,
                performance=r.performance,
                visit_type=r.type,
                redeemed_at=r.redeemed_at,
                pass_name=r.pass_name,
                status=r.status,
            )
            for r in rows
        ]

    def timestamp_of(self, record):
        return record.redeemed_at


class SubscriptionHandler(CategorySaveHandler[SubscriptionRow]):
    """Shared by the five subscription categories; rows are tagged by category."""

    row_model = SubscriptionRow

    def to_records(self, rows, window, snapshot_id):
        return [
            SubscriptionRecord(
                snapshot_id=snapshot_id,
                category=self.category.value,
                plan_name=r.name,
                plan_state=r.state,
                plan_price=r.price,
                customer_name=r.customer,
                customer_email=r.email,
                created_at=r.created,
                canceled_at=r.canceled_at,
            )
            for r in rows
        ]

    def timestamp_of(self, record):
        # The canceled report carries no creation date.
        if self.category is Category.CANCELED_SUBSCRIPTIONS:
            return record.canceled_at or record.created_at
        return record.created_at


class RegistrationHandler(CategorySaveHandler[RegistrationRow]):
    row_model = RegistrationRow

    def to_records(self, rows, window, snapshot_id):
        return [
            RegistrationRecord(
                snapshot_id=snapshot_id,
                event_name=r.event_name,
                performance_starts_at=r.performance_starts_at,
                location_name=r.location_name,
                instructor_name=r.instructor_name,
                first_name=r.first_name,
                last_name=r.last_name,
                email=r.email,
                registered_at=r.registered_at,
                canceled_at=r.canceled_at,
                attended_at=r.attended_at,
                registration_type=r.registration_type,
                state=r.state,
                pass_name=r.pass_name,
                subscription=r.subscription,
                revenue=r.revenue,
            )
            for r in rows
        ]

    def timestamp_of(self, record):
        return record.attended_at


class RevenueCategoryHandler(CategorySaveHandler[RevenueCategoryRow]):
    """Totals carry no per-row date; rows are tagged with the requested window."""

    row_model = RevenueCategoryRow

    def to_records(self, rows, window, snapshot_id):
        return [
            RevenueCategoryRecord(
                snapshot_id=snapshot_id,
                period_start=window.start,
                period_end=window.end,
                revenue_category=r.revenue_category,
                revenue=r.revenue,
                platform_fees=r.platform_fees,
                processing_fees=r.stripe_fees,
                other_fees=r.other_fees + r.transfers,
                refunded=r.refunded,
                net_revenue=r.net_revenue,
            )
            for r in rows
        ]

    def timestamp_of(self, record):
        return datetime.combine(record.period_end, time.min, tzinfo=UTC)


class SaveHandlerRegistry:
    """Registry of save handlers, keyed by category."""

    def __init__(self) -> None:
        self._handlers: dict[Category, CategorySaveHandler] = {}

    def register(self, handler: CategorySaveHandler) -> None:
        self._handlers[handler.category] = handler
        logger.debug("save_handler_registered", category=handler.category.value)

    def get(self, category: Category) -> CategorySaveHandler | None:
        return self._handlers.get(category)

    @property
    def categories(self) -> list[Category]:
        return list(self._handlers)


def default_registry(database: Database, watermarks: WatermarkStore) -> SaveHandlerRegistry:
    """A registry with a handler for every category."""
    registry = SaveHandlerRegistry()
    registry.register(CustomerHandler(Category.NEW_CUSTOMERS, database, watermarks))
    registry.register(OrderHandler(Category.ORDERS, database, watermarks))
    registry.register(FirstVisitHandler(Category.FIRST_VISITS, database, watermarks))
    for category in sorted(SUBSCRIPTION_CATEGORIES, key=lambda c: c.value):
        registry.register(SubscriptionHandler(category, database, watermarks))
    registry.register(RegistrationHandler(Category.FULL_REGISTRATIONS, database, watermarks))
    registry.register(RevenueCategoryHandler(Category.REVENUE_CATEGORIES, database, watermarks))
    return registry
