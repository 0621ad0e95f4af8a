"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
from datetime import date

import structlog

from .config import ImapConfig

logger = structlog.get_logger()


class AsyncImapClient:
    """Async-friendly IMAP client.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.
    """

    def __init__(self, config: ImapConfig) -> None:
        self._config = config
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, login, and select the configured mailbox."""
        await asyncio.to_thread(self._connect_sync)
        logger.info("imap_connected", host=self._config.host, mailbox=self._config.mailbox)

    def _connect_sync(self) -> None:
        if self._config.use_ssl:
            self._conn = imaplib.IMAP4_SSL(self._config.host, self._config.port)
        else:
            self._conn = imaplib.IMAP4(self._config.host, self._config.port)
        self._conn.login(self._config.username, self._config.password.get_secret_value())
        self._conn.select(self._config.mailbox)

    async def disconnect(self) -> None:
        """Close mailbox and logout."""
        if self._conn is not None:
            await asyncio.to_thread(self._disconnect_sync)
            self._conn = None
            logger.info("imap_disconnected")

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        for step in (self._conn.close, self._conn.logout):
            try:
                step()
            except (imaplib.IMAP4.error, OSError):
                pass

    async def reconnect(self) -> None:
        await self.disconnect()
        await self.connect()

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            status, _ = await asyncio.to_thread(self._conn.noop)
            return status == "OK"
        except (imaplib.IMAP4.error, OSError):
            return False

    # ------------------------------------------------------------------
    # Search / fetch / flag
    # ------------------------------------------------------------------

    async def search_since(self, since: date, sender: str | None = None) -> list[str]:
        """UIDs of messages received on or after *since* (day-granular)."""
        criteria = f"SINCE {since.strftime('%d-%b-%Y')}"
        if sender:
            criteria += f' FROM "{sender}"'
        return await asyncio.to_thread(self._search_sync, criteria)

    def _search_sync(self, criteria: str) -> list[str]:
        assert self._conn is not None, "Not connected"
        status, data = self._conn.uid("SEARCH", None, criteria)
        if status != "OK":
            raise imaplib.IMAP4.error(f"SEARCH failed: {status}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    async def fetch(self, uid: str) -> bytes | None:
        """Full RFC 822 bytes of one message, or ``None`` if it vanished."""
        return await asyncio.to_thread(self._fetch_sync, uid)

    def _fetch_sync(self, uid: str) -> bytes | None:
        assert self._conn is not None, "Not connected"
        status, msg_data = self._conn.uid("FETCH", uid, "(RFC822)")
        if status != "OK":
            raise imaplib.IMAP4.error(f"FETCH {uid} failed: {status}")
        if not msg_data or not msg_data[0] or not isinstance(msg_data[0], tuple):
            return None
        return msg_data[0][1]

    async def mark_seen(self, uid: str) -> None:
        await asyncio.to_thread(self._store_sync, uid, "+FLAGS", "(\\Seen)")

    def _store_sync(self, uid: str, command: str, flags: str) -> None:
        assert self._conn is not None, "Not connected"
        status, _ = self._conn.uid("STORE", uid, command, flags)
        if status != "OK":
            raise imaplib.IMAP4.error(f"STORE {uid} failed: {status}")
