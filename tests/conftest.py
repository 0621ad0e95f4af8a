"""Shared fixtures and fakes for the report ingestion test suite."""

from __future__ import annotations

import asyncio
import io
import zipfile
from datetime import UTC, date, datetime, timedelta
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from report_ingest.config import ImapConfig, PipelineConfig, RetryConfig, StorageConfig
from report_ingest.db import Database
from report_ingest.inbox import InboxPoller
from report_ingest.models import (
    Attachment,
    AttachmentKey,
    Category,
    DateRange,
    DirectDelivery,
    FailedTrigger,
    InboxMessage,
    TriggerResult,
    Watermark,
)
from report_ingest.trigger import PlatformCredentials, TriggerDriver
from report_ingest.watermarks import WatermarkStore, as_utc

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=UTC)


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="reports@test.com",
        password="testpass",
        mailbox="INBOX",
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=2, initial_wait_seconds=0, max_wait_seconds=0, multiplier=1)


@pytest.fixture
def pipeline_config(imap_config: ImapConfig, retry_config: RetryConfig, tmp_path: Path) -> PipelineConfig:
    return PipelineConfig(
        poll_timeout_seconds=300,
        poll_interval_seconds=30,
        lookback_margin_seconds=60,
        backfill_floor=date(2024, 1, 1),
        inbox_lookback_hours=24,
        log_json=False,
        imap=imap_config,
        retry=retry_config,
        storage=StorageConfig(database_url="sqlite+aiosqlite://", download_dir=tmp_path / "downloads"),
    )


@pytest.fixture
def credentials() -> PlatformCredentials:
    return PlatformCredentials(username="admin@studio.test", password="secret")


@pytest.fixture
async def database():
    db = Database("sqlite+aiosqlite://")
    await db.create_all()
    yield db
    await db.close()


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class FakeClock:
    """Simulated time; ``sleep`` advances both clocks instantly."""

    def __init__(self, start: datetime = NOW) -> None:
        self._now = start
        self._monotonic = 1000.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


class InMemoryWatermarkStore(WatermarkStore):
    def __init__(self, initial: dict[Category, datetime] | None = None) -> None:
        self.marks: dict[Category, Watermark] = {
            c: Watermark(category=c, high_water_mark=hwm) for c, hwm in (initial or {}).items()
        }
        self.set_calls: list[tuple[Category, datetime, int]] = []

    async def get(self, category: Category) -> Watermark | None:
        return self.marks.get(category)

    async def set(self, category, high_water_mark, record_count, note="", session=None):
        self.set_calls.append((category, high_water_mark, record_count))
        current = self.marks.get(category)
        if current is not None and current.high_water_mark >= as_utc(high_water_mark):
            return False
        self.marks[category] = Watermark(
            category=category,
            high_water_mark=as_utc(high_water_mark),
            record_count=record_count,
            note=note,
        )
        return True

    async def all(self) -> list[Watermark]:
        return [self.marks[c] for c in sorted(self.marks, key=lambda c: c.value)]


class FakeInbox(InboxPoller):
    """Scripted inbox.

    ``schedule`` maps a poll number (1-based) to messages that become
    visible from that poll on.  ``files`` maps message id to its
    downloaded attachments.
    """

    def __init__(self) -> None:
        self.schedule: dict[int, list[InboxMessage]] = {}
        self.files: dict[str, dict[AttachmentKey, Path]] = {}
        self.polls = 0
        self.since: list[datetime] = []
        self.downloads: list[str] = []
        self.processed: list[str] = []
        self.fail_downloads: set[str] = set()

    def deliver(self, on_poll: int, message: InboxMessage, files: dict[AttachmentKey, Path]) -> None:
        self.schedule.setdefault(on_poll, []).append(message)
        self.files[message.id] = files

    async def find_messages_since(self, since: datetime) -> list[InboxMessage]:
        self.polls += 1
        self.since.append(since)
        visible: list[InboxMessage] = []
        for poll, messages in sorted(self.schedule.items()):
            if poll <= self.polls:
                visible.extend(m for m in messages if m.received_at >= since)
        return visible

    async def download_attachments(self, message: InboxMessage) -> dict[AttachmentKey, Path]:
        self.downloads.append(message.id)
        if message.id in self.fail_downloads:
            self.fail_downloads.discard(message.id)
            raise ConnectionError("download interrupted")
        return self.files[message.id]

    async def mark_processed(self, message: InboxMessage) -> None:
        self.processed.append(message.id)


class FakeTriggerDriver(TriggerDriver):
    def __init__(
        self,
        *,
        direct: dict[Category, Path] | None = None,
        failed: dict[Category, str] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.direct = direct or {}
        self.failed = failed or {}
        self.error = error
        self.calls: list[dict[Category, DateRange]] = []

    async def trigger(self, credentials, windows):
        self.calls.append(dict(windows))
        if self.error is not None:
            raise self.error
        return TriggerResult(
            direct=[DirectDelivery(category=c, path=p) for c, p in self.direct.items() if c in windows],
            pending=[c for c in windows if c not in self.direct and c not in self.failed],
            failed=[FailedTrigger(category=c, reason=r) for c, r in self.failed.items() if c in windows],
        )


# ------------------------------------------------------------------
# CSV fixtures
# ------------------------------------------------------------------

CSV_BY_CATEGORY: dict[Category, str] = {
    Category.NEW_CUSTOMERS: (
        "Name,Email,Role,Orders,Created\n"
        "Ada Lovelace,ada@example.com,Customer,2,2025-06-01T09:30:00\n"
        "Grace Hopper,grace@example.com,Customer,1,5/31/2025 8:00 AM\n"
    ),
    Category.ORDERS: (
        "Created,Code,Customer,Email,Type,Payment,Total\n"
        "2025-06-01T10:00:00,A1,Ada Lovelace,ada@example.com,Pass,Card,\"$1,200.50\"\n"
        "2025-06-01T11:15:00,A2,Grace Hopper,grace@example.com,Drop-in,Card,$20.00\n"
    ),
    Category.FIRST_VISITS: (
        "Attendee,Performance,Type,Redeemed At,Pass,Status\n"
        "Ada Lovelace,Morning Flow,Intro,2025-06-01T07:00:00,Intro Pass,redeemed\n"
    ),
    Category.ACTIVE_SUBSCRIPTIONS: (
        "Subscription Name,Subscription State,Subscription Price,Customer Name,Customer Email,Created At\n"
        "Unlimited,active,$150.00,Ada Lovelace,ada@example.com,2025-05-30T12:00:00\n"
    ),
    Category.PAUSED_SUBSCRIPTIONS: (
        "Name,State,Price,Customer,Email,Created\n"
        "Unlimited,paused,$150.00,Grace Hopper,grace@example.com,2025-05-20T12:00:00\n"
    ),
    Category.TRIALING_SUBSCRIPTIONS: (
        "Name,State,Price,Customer,Email,Created\n"
        "Starter,trialing,$0.00,Alan Turing,alan@example.com,2025-05-28T12:00:00\n"
    ),
    Category.NEW_SUBSCRIPTIONS: (
        "Name,State,Price,Customer,Email,Created\n"
        "Unlimited,active,$150.00,Alan Turing,alan@example.com,2025-06-01T12:00:00\n"
    ),
    Category.CANCELED_SUBSCRIPTIONS: (
        "Name,State,Price,Customer,Email,Canceled At\n"
        "Unlimited,canceled,$150.00,Edsger Dijkstra,ed@example.com,2025-05-31T18:00:00\n"
    ),
    Category.FULL_REGISTRATIONS: (
        "Event Name,Performance Starts At,Location Name,Teacher Name,First Name,Last Name,Email,"
        "Registered At,Canceled At,Attended At,Registration Type,State,Pass,Subscription,Revenue\n"
        "Morning Flow,2025-06-01T07:00:00,Main Room,Kim,Ada,Lovelace,ada@example.com,"
        "2025-05-30T09:00:00,,2025-06-01T07:05:00,pass,attended,Unlimited,true,$12.50\n"
    ),
    Category.REVENUE_CATEGORIES: (
        "Revenue Category,Revenue,Union Fees,Stripe Fees,Other Fees,Transfers,Refunded,Net Revenue\n"
        "Memberships,\"$5,000.00\",$100.00,$150.00,$10.00,$5.00,$0.00,\"$4,735.00\"\n"
    ),
}


def write_report(directory: Path, category: Category, name: str | None = None) -> Path:
    """Write a valid sample report for *category* and return its path."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / (name or f"{category.value}.csv")
    path.write_text(CSV_BY_CATEGORY[category], encoding="utf-8")
    return path


def make_message(
    message_id: str,
    subject: str,
    *,
    received_at: datetime = NOW,
    filenames: tuple[str, ...] = ("export.csv",),
) -> InboxMessage:
    return InboxMessage(
        id=message_id,
        subject=subject,
        sender="reports@platform.test",
        received_at=received_at,
        attachments=[
            Attachment(filename=f, mime_type="text/csv", content_ref=str(i + 1))
            for i, f in enumerate(filenames)
        ],
    )


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_report_email(
    *,
    subject: str = "Your New Customer Export is ready",
    from_addr: str = "reports@platform.test",
    date_header: str = "Mon, 02 Jun 2025 12:05:00 +0000",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart report email with a text body and attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = "reports@test.com"
    msg["Message-ID"] = "<report-001@platform.test>"
    msg["Date"] = date_header
    msg.attach(MIMEText("Your export is attached.", "plain"))

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


def _build_zip(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, payload in members.items():
            archive.writestr(name, payload)
    return buffer.getvalue()


@pytest.fixture
def customers_eml_bytes() -> bytes:
    return _build_report_email(
        attachments=[
            ("customers.csv", "text/csv", CSV_BY_CATEGORY[Category.NEW_CUSTOMERS].encode()),
        ],
    )


# ------------------------------------------------------------------
# IMAP mocks
# ------------------------------------------------------------------


def make_mock_imap(
    *,
    search_uids: list[bytes] | None = None,
    fetch_data: dict[bytes, bytes] | None = None,
    search_status: str = "OK",
) -> MagicMock:
    """Create a mock imaplib.IMAP4_SSL with programmed responses."""
    mock = MagicMock()
    mock.login.return_value = ("OK", [b"Logged in"])
    mock.select.return_value = ("OK", [b"1"])
    mock.close.return_value = ("OK", [b"Closed"])
    mock.logout.return_value = ("BYE", [b"Bye"])
    mock.noop.return_value = ("OK", [b""])

    uid_data = b" ".join(search_uids) if search_uids else b""
    mock.uid.side_effect = _make_uid_handler(uid_data, fetch_data or {}, search_status)
    return mock


def _make_uid_handler(search_data: bytes, fetch_data: dict[bytes, bytes], search_status: str):
    """Side effect for mock.uid() covering SEARCH, FETCH and STORE."""

    def handler(command: str, *args):
        if command == "SEARCH":
            return (search_status, [search_data])
        elif command == "FETCH":
            uid = args[0].encode() if isinstance(args[0], str) else args[0]
            raw = fetch_data.get(uid, b"")
            if raw:
                return ("OK", [(b"1 (RFC822 {%d})" % len(raw), raw)])
            return ("OK", [None])
        return ("OK", [b""])

    return handler
