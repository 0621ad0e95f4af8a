"""Data models shared across the ingestion pipeline."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

_PLATFORM_RANGE = re.compile(r"^\s*(\d{1,2})/(\d{1,2})/(\d{4})\s*-\s*(\d{1,2})/(\d{1,2})/(\d{4})\s*$")


class Category(str, Enum):
    """The closed set of report categories pulled from the platform."""

    NEW_CUSTOMERS = "new_customers"
    ORDERS = "orders"
    FIRST_VISITS = "first_visits"
    ACTIVE_SUBSCRIPTIONS = "active_subscriptions"
    PAUSED_SUBSCRIPTIONS = "paused_subscriptions"
    TRIALING_SUBSCRIPTIONS = "trialing_subscriptions"
    NEW_SUBSCRIPTIONS = "new_subscriptions"
    CANCELED_SUBSCRIPTIONS = "canceled_subscriptions"
    FULL_REGISTRATIONS = "full_registrations"
    REVENUE_CATEGORIES = "revenue_categories"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


ALL_CATEGORIES: tuple[Category, ...] = tuple(Category)

SUBSCRIPTION_CATEGORIES: frozenset[Category] = frozenset(
    {
        Category.ACTIVE_SUBSCRIPTIONS,
        Category.PAUSED_SUBSCRIPTIONS,
        Category.TRIALING_SUBSCRIPTIONS,
        Category.NEW_SUBSCRIPTIONS,
        Category.CANCELED_SUBSCRIPTIONS,
    }
)


class DateRange(BaseModel):
    """Inclusive day range requested from the platform."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> DateRange:
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")
        return self

    def to_platform(self) -> str:
        """Render as the admin UI expects, e.g. ``1/5/2025 - 2/16/2025``."""
        return f"{_us_date(self.start)} - {_us_date(self.end)}"

    @classmethod
    def from_platform(cls, text: str) -> DateRange:
        match = _PLATFORM_RANGE.match(text)
        if match is None:
            raise ValueError(f"Unrecognised platform date range: {text!r}")
        m1, d1, y1, m2, d2, y2 = (int(g) for g in match.groups())
        return cls(start=date(y1, m1, d1), end=date(y2, m2, d2))

    def union(self, other: DateRange) -> DateRange:
        return DateRange(start=min(self.start, other.start), end=max(self.end, other.end))


def _us_date(d: date) -> str:
    return f"{d.month}/{d.day}/{d.year}"


class Watermark(BaseModel):
    """How far ingestion has progressed for one category."""

    category: Category
    high_water_mark: datetime
    record_count: int = 0
    note: str = ""
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# ----------------------------------------------------------------------
# Trigger phase
# ----------------------------------------------------------------------


class DirectDelivery(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: Category
    path: Path


class FailedTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: Category
    reason: str


class TriggerResult(BaseModel):
    """Per-category outcome of one trigger phase.

    Every category appears in at most one of the three lists.
    """

    model_config = ConfigDict(frozen=True)

    direct: list[DirectDelivery] = Field(default_factory=list)
    pending: list[Category] = Field(default_factory=list)
    failed: list[FailedTrigger] = Field(default_factory=list)

    @property
    def deliverable(self) -> int:
        return len(self.direct) + len(self.pending)


# ----------------------------------------------------------------------
# Category state machine
# ----------------------------------------------------------------------


class DeliveryMethod(str, Enum):
    DIRECT = "direct"
    MESSAGE = "message"


class CategoryStatus(str, Enum):
    PENDING = "pending"
    TRIGGERING = "triggering"
    DOWNLOADING = "downloading"
    AWAITING_MESSAGE = "awaiting_message"
    PARSING = "parsing"
    SAVED = "saved"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CategoryStatus.SAVED, CategoryStatus.FAILED)


class CategoryState(BaseModel):
    """Immutable snapshot of one category's progress within a run."""

    model_config = ConfigDict(frozen=True)

    status: CategoryStatus = CategoryStatus.PENDING
    delivery_method: DeliveryMethod | None = None
    record_count: int | None = None
    error: str | None = None

    @classmethod
    def saved(cls, record_count: int, method: DeliveryMethod) -> CategoryState:
        return cls(status=CategoryStatus.SAVED, record_count=record_count, delivery_method=method)

    @classmethod
    def failed(cls, error: str, method: DeliveryMethod | None = None) -> CategoryState:
        return cls(status=CategoryStatus.FAILED, error=error, delivery_method=method)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# ----------------------------------------------------------------------
# Inbox
# ----------------------------------------------------------------------


class Attachment(BaseModel):
    """Attachment metadata; ``content_ref`` locates the payload for download."""

    model_config = ConfigDict(frozen=True)

    filename: str
    mime_type: str = "application/octet-stream"
    size_bytes: int = 0
    content_ref: str = ""

    @property
    def is_archive(self) -> bool:
        return self.filename.lower().endswith(".zip") or self.mime_type in (
            "application/zip",
            "application/x-zip-compressed",
        )


class InboxMessage(BaseModel):
    """Read-only snapshot of one report email."""

    model_config = ConfigDict(frozen=True)

    id: str
    subject: str
    sender: str = ""
    received_at: datetime
    attachments: list[Attachment] = Field(default_factory=list)


class AttachmentKey(BaseModel):
    """Identifies one downloaded file.

    ``archive`` is set when the file was extracted from an archive
    attachment; the subject is always the parent message's subject.
    """

    model_config = ConfigDict(frozen=True)

    subject: str
    filename: str
    archive: str | None = None


# ----------------------------------------------------------------------
# Run reporting
# ----------------------------------------------------------------------


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    percent: int = Field(ge=0, le=100)
    snapshot: dict[Category, CategoryState] = Field(default_factory=dict)


class CheckStatus(str, Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"


class CompletenessCheck(BaseModel):
    category: Category
    count: int
    minimum: int
    status: CheckStatus


class CompletenessReport(BaseModel):
    """Per-category record counts measured against configured minimums."""

    passed: bool = True
    checks: list[CompletenessCheck] = Field(default_factory=list)

    def with_status(self, status: CheckStatus) -> list[CompletenessCheck]:
        return [c for c in self.checks if c.status is status]


class RunResult(BaseModel):
    """Outcome of one orchestrator run.

    ``success`` is true as long as one category was saved; callers decide
    whether ``missing_categories`` makes a partial run acceptable.
    """

    run_id: str
    success: bool
    saved_categories: dict[Category, int] = Field(default_factory=dict)
    missing_categories: list[Category] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    validation: CompletenessReport | None = None
