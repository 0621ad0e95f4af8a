"""CSV parsing with per-row pydantic validation.

Raw file in, typed rows plus warnings out.  A bad row never fails the
file; it becomes a warning.
"""

from __future__ import annotations

import csv
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Any, Generic, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

MAX_ROW_WARNINGS = 10

# Column names seen in direct downloads that differ from the emailed exports.
COLUMN_ALIASES: dict[str, str] = {
    "subscription_name": "name",
    "subscription_state": "state",
    "subscription_price": "price",
    "customer_name": "customer",
    "customer_email": "email",
    "created_at": "created",
    "union_fees": "platform_fees",
    "union_fees_refunded": "platform_fees_refunded",
    "phone_number": "phone",
    "teacher_name": "instructor_name",
}

_TIMESTAMP_FORMATS = (
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%b %d, %Y %I:%M %p",
    "%b %d, %Y",
    "%B %d, %Y",
)


def normalize_header(header: str) -> str:
    """``"REDEEMED AT"`` -> ``"redeemed_at"``, then apply :data:`COLUMN_ALIASES`."""
    snake = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", header.strip())
    snake = re.sub(r"[^a-z0-9]+", "_", snake.lower()).strip("_")
    return COLUMN_ALIASES.get(snake, snake)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()


def _money(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[$,\s]", "", str(value or ""))
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = "-" + cleaned[1:-1]
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def _count(value: Any) -> int:
    try:
        return int(float(str(value).replace(",", "").strip()))
    except (TypeError, ValueError):
        return 0


def _flag(value: Any) -> bool:
    return str(value or "").strip().lower() in ("true", "yes", "y", "1")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse the platform's timestamp spellings; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = _text(value)
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            else:
                return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


Text = Annotated[str, BeforeValidator(_text)]
Money = Annotated[float, BeforeValidator(_money)]
Count = Annotated[int, BeforeValidator(_count)]
Flag = Annotated[bool, BeforeValidator(_flag)]
Timestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]


def _strip_suffix(word: str) -> BeforeValidator:
    pattern = re.compile(rf"\n\s*{word}", re.I)
    return BeforeValidator(lambda v: _text(pattern.sub("", str(v or ""))))


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CustomerRow(_Row):
    name: Text = ""
    email: Text = ""
    role: Text = ""
    orders: Count = 0
    created: Timestamp = None


class OrderRow(_Row):
    created: Timestamp = None
    code: Text = ""
    customer: Text = ""
    email: Text = ""
    type: Text = ""
    payment: Text = ""
    total: Money = 0.0


class FirstVisitRow(_Row):
    attendee: Text = ""
    performance: Text = ""
    type: Text = ""
    redeemed_at: Timestamp = None
    pass_name: Text = Field(default="", alias="pass")
    status: Text = ""


class SubscriptionRow(_Row):
    """Active, paused, trialing, new and canceled subscription reports."""

    name: Annotated[str, _strip_suffix("Subscription")] = ""
    state: Annotated[str, _strip_suffix("Register")] = ""
    price: Money = 0.0
    customer: Annotated[str, _strip_suffix("Register")] = ""
    email: Text = ""
    created: Timestamp = None
    canceled_at: Timestamp = None


class RegistrationRow(_Row):
    event_name: Text = ""
    performance_starts_at: Timestamp = None
    location_name: Text = ""
    instructor_name: Text = ""
    first_name: Text = ""
    last_name: Text = ""
    email: Text = ""
    registered_at: Timestamp = None
    canceled_at: Timestamp = None
    attended_at: Timestamp = None
    registration_type: Text = ""
    state: Text = ""
    pass_name: Text = Field(default="", alias="pass")
    subscription: Flag = False
    revenue: Money = 0.0


class RevenueCategoryRow(_Row):
    revenue_category: Text = ""
    revenue: Money = 0.0
    platform_fees: Money = 0.0
    stripe_fees: Money = 0.0
    other_fees: Money = 0.0
    transfers: Money = 0.0
    refunded: Money = 0.0
    net_revenue: Money = 0.0


RowT = TypeVar("RowT", bound=BaseModel)


@dataclass
class ParseResult(Generic[RowT]):
    rows: list[RowT] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def parse_csv(path: Path, model: type[RowT]) -> ParseResult[RowT]:
    """Read *path* and validate every row against *model*.

    Raises ``OSError`` / ``UnicodeDecodeError`` / ``csv.Error`` for files
    that cannot be read at all; row-level problems only add warnings.
    """
    result: ParseResult[RowT] = ParseResult()
    skipped = 0

    with open(path, newline="", encoding="utf-8-sig") as fh:
        reader = csv.reader(fh)
        try:
            header = next(reader)
        except StopIteration:
            return result
        columns = [normalize_header(h) for h in header]

        for line_no, values in enumerate(reader, start=2):
            if not any(v.strip() for v in values):
                continue
            record = dict(zip(columns, values, strict=False))
            try:
                result.rows.append(model.model_validate(record))
            except ValidationError as exc:
                skipped += 1
                if len(result.warnings) < MAX_ROW_WARNINGS:
                    problems = ", ".join(
                        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
                    )
                    result.warnings.append(f"Row {line_no}: {problems}")

    if skipped > MAX_ROW_WARNINGS:
        result.warnings.append(f"{skipped - MAX_ROW_WARNINGS} more invalid rows not shown")
    return result
