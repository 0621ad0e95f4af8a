"""Inbox poller: find report emails and download their attachments.

Zip attachments are expanded on download; every extracted file keeps
the parent message's subject for classification.
"""

from __future__ import annotations

import abc
import asyncio
import email
import email.policy
import email.utils
import imaplib
import io
import re
import zipfile
from datetime import UTC, datetime
from email.message import EmailMessage
from pathlib import Path

import structlog

from .config import ImapConfig, RetryConfig
from .imap_client import AsyncImapClient
from .models import Attachment, AttachmentKey, InboxMessage
from .retry import with_retry

logger = structlog.get_logger()

REPORT_EXTENSIONS = (".csv", ".zip")
REPORT_MIME_TYPES = frozenset(
    {"text/csv", "application/csv", "application/zip", "application/x-zip-compressed"}
)


class InboxPoller(abc.ABC):
    """The two inbox operations the orchestrator needs.

    ``find_messages_since`` may return messages seen before; callers
    de-duplicate by ``InboxMessage.id``.
    """

    async def __aenter__(self) -> InboxPoller:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> None:
        """Open connections.  Default: nothing to do."""

    async def stop(self) -> None:
        """Release connections.  Default: nothing to do."""

    @abc.abstractmethod
    async def find_messages_since(self, since: datetime) -> list[InboxMessage]:
        """Report emails received at or after *since*."""

    @abc.abstractmethod
    async def download_attachments(self, message: InboxMessage) -> dict[AttachmentKey, Path]:
        """Write every attachment of *message* to disk, expanding archives."""

    async def mark_processed(self, message: InboxMessage) -> None:
        """Flag *message* as handled.  Default: no-op."""


class ImapInboxPoller(InboxPoller):
    """:class:`InboxPoller` over IMAP.

    Raw message bytes are cached by UID so repeated polls only fetch
    messages that arrived since the previous poll.
    """

    def __init__(self, config: ImapConfig, download_dir: Path, retry: RetryConfig) -> None:
        self._config = config
        self._download_dir = download_dir
        self._imap = AsyncImapClient(config)
        self._raw: dict[str, bytes] = {}
        self._messages: dict[str, InboxMessage | None] = {}
        retryable = (imaplib.IMAP4.error, OSError)
        self._search_retry = with_retry(retry, retryable_exceptions=retryable, operation="imap_search")
        self._fetch_retry = with_retry(retry, retryable_exceptions=retryable, operation="imap_fetch")

    async def start(self) -> None:
        self._download_dir.mkdir(parents=True, exist_ok=True)
        await self._imap.connect()

    async def stop(self) -> None:
        await self._imap.disconnect()

    async def find_messages_since(self, since: datetime) -> list[InboxMessage]:
        since = since.astimezone(UTC)

        @self._search_retry
        async def _search() -> list[str]:
            try:
                return await self._imap.search_since(since.date(), self._config.sender_filter)
            except (imaplib.IMAP4.error, OSError):
                logger.warning("imap_search_failed_reconnecting")
                await self._imap.reconnect()
                raise

        uids = await _search()
        found: list[InboxMessage] = []
        for uid in uids:
            if uid not in self._messages:
                raw = await self._fetch(uid)
                self._messages[uid] = _to_message(uid, raw) if raw is not None else None
                if raw is not None:
                    self._raw[uid] = raw
            message = self._messages[uid]
            # IMAP SINCE is day-granular; narrow to the exact instant here.
            if message is not None and message.received_at >= since:
                found.append(message)

        logger.debug("inbox_search_complete", searched=len(uids), matched=len(found))
        return found

    async def _fetch(self, uid: str) -> bytes | None:
        @self._fetch_retry
        async def _do() -> bytes | None:
            return await self._imap.fetch(uid)

        return await _do()

    async def download_attachments(self, message: InboxMessage) -> dict[AttachmentKey, Path]:
        raw = self._raw.get(message.id)
        if raw is None:
            raw = await self._fetch(message.id)
            if raw is None:
                raise FileNotFoundError(f"Message {message.id} is no longer in the mailbox")
            self._raw[message.id] = raw
        return await asyncio.to_thread(self._write_attachments, message, raw)

    def _write_attachments(self, message: InboxMessage, raw: bytes) -> dict[AttachmentKey, Path]:
        parsed = email.message_from_bytes(raw, policy=email.policy.default)
        parts = _attachment_parts(parsed)
        saved: dict[AttachmentKey, Path] = {}

        for attachment in message.attachments:
            part = parts.get(attachment.content_ref)
            if part is None:
                logger.warning("attachment_part_missing", message_id=message.id, filename=attachment.filename)
                continue
            payload = part.get_payload(decode=True) or b""

            if attachment.is_archive:
                saved.update(self._expand_archive(message, attachment.filename, payload))
                continue

            path = self._write(message.id, attachment.filename, payload)
            saved[AttachmentKey(subject=message.subject, filename=attachment.filename)] = path
            logger.info(
                "attachment_downloaded",
                message_id=message.id,
                filename=attachment.filename,
                path=str(path),
            )
        return saved

    def _expand_archive(
        self,
        message: InboxMessage,
        archive_name: str,
        payload: bytes,
    ) -> dict[AttachmentKey, Path]:
        extracted: dict[AttachmentKey, Path] = {}
        try:
            archive = zipfile.ZipFile(io.BytesIO(payload))
        except zipfile.BadZipFile:
            logger.warning("archive_unreadable", message_id=message.id, filename=archive_name)
            return extracted

        with archive:
            for info in archive.infolist():
                member = Path(info.filename).name
                if info.is_dir() or not member:
                    continue
                if not member.lower().endswith(".csv"):
                    logger.debug("archive_member_skipped", archive=archive_name, member=member)
                    continue
                path = self._write(message.id, member, archive.read(info))
                key = AttachmentKey(subject=message.subject, filename=member, archive=archive_name)
                extracted[key] = path

        logger.info(
            "archive_expanded",
            message_id=message.id,
            archive=archive_name,
            extracted=len(extracted),
        )
        return extracted

    def _write(self, uid: str, filename: str, payload: bytes) -> Path:
        path = self._download_dir / f"{uid}-{_sanitize_filename(filename)}"
        path.write_bytes(payload)
        return path

    async def mark_processed(self, message: InboxMessage) -> None:
        await self._imap.mark_seen(message.id)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _attachment_parts(msg: EmailMessage) -> dict[str, EmailMessage]:
    """Named leaf parts keyed by their position in ``msg.walk()``."""
    parts: dict[str, EmailMessage] = {}
    for index, part in enumerate(msg.walk()):
        if part.get_content_maintype() == "multipart":
            continue
        if part.get_filename() or part.get_content_disposition() == "attachment":
            parts[str(index)] = part
    return parts


def _is_report_file(filename: str, mime_type: str) -> bool:
    return filename.lower().endswith(REPORT_EXTENSIONS) or mime_type in REPORT_MIME_TYPES


def _to_message(uid: str, raw: bytes) -> InboxMessage | None:
    """Build an :class:`InboxMessage`; ``None`` if it carries no report files."""
    msg = email.message_from_bytes(raw, policy=email.policy.default)
    attachments: list[Attachment] = []
    for ref, part in _attachment_parts(msg).items():
        filename = part.get_filename() or "unnamed"
        mime_type = part.get_content_type()
        if not _is_report_file(filename, mime_type):
            continue
        payload = part.get_payload(decode=True) or b""
        attachments.append(
            Attachment(filename=filename, mime_type=mime_type, size_bytes=len(payload), content_ref=ref)
        )
    if not attachments:
        return None

    return InboxMessage(
        id=uid,
        subject=str(msg.get("Subject", "")),
        sender=str(msg.get("From", "")),
        received_at=_received_at(msg.get("Date")),
        attachments=attachments,
    )


def _received_at(header: object) -> datetime:
    if header:
        try:
            parsed = email.utils.parsedate_to_datetime(str(header))
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)
    return datetime.now(UTC)


def _sanitize_filename(name: str) -> str:
    """Remove characters unsafe for local file names."""
    return re.sub(r"[^\w.\-]", "_", name)
