"""Trigger driver boundary.

A trigger driver asks the platform for one export per category and
reports, per category, whether the file came back directly, will arrive
by email, or could not be requested.  Browser automation itself lives
in concrete subclasses of :class:`PageTriggerDriver`.
"""

from __future__ import annotations

import abc
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, SecretStr

from .config import PlatformConfig, RetryConfig
from .errors import ConfigurationError
from .models import Category, DateRange, DirectDelivery, FailedTrigger, TriggerResult
from .retry import with_retry

logger = structlog.get_logger()


class PlatformCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    password: SecretStr

    @property
    def complete(self) -> bool:
        return bool(self.username and self.password.get_secret_value())

    def require_complete(self) -> None:
        if not self.complete:
            raise ConfigurationError(
                "Platform credentials not configured: set PLATFORM_USERNAME and PLATFORM_PASSWORD"
            )

    @classmethod
    def from_config(cls, config: PlatformConfig) -> PlatformCredentials:
        credentials = cls(username=config.username, password=config.password)
        credentials.require_complete()
        return credentials


class TriggerDriver(abc.ABC):
    """Request an export for every category in *windows*."""

    @abc.abstractmethod
    async def trigger(
        self,
        credentials: PlatformCredentials,
        windows: dict[Category, DateRange],
    ) -> TriggerResult:
        """Return per-category outcomes; must not raise for a single category's failure."""


class PageTriggerDriver(TriggerDriver):
    """Session lifecycle plus a per-category request loop with retry.

    Subclasses implement :meth:`open_session`, :meth:`close_session` and
    :meth:`request_export`.  Each category is attempted up to
    ``retry.max_attempts`` times; a category that still fails is recorded
    in ``TriggerResult.failed`` and the loop moves on.
    """

    def __init__(self, download_dir: Path, retry: RetryConfig) -> None:
        self.download_dir = download_dir
        self._retry_config = retry

    @abc.abstractmethod
    async def open_session(self, credentials: PlatformCredentials) -> None:
        """Launch the browser and log in."""

    @abc.abstractmethod
    async def close_session(self) -> None:
        """Tear the browser session down."""

    @abc.abstractmethod
    async def request_export(self, category: Category, date_range: str) -> Path | None:
        """Click the export for *category* over *date_range* (platform text format).

        Returns the captured file when the platform sends it straight
        back, ``None`` when the export will be emailed instead.
        """

    async def trigger(
        self,
        credentials: PlatformCredentials,
        windows: dict[Category, DateRange],
    ) -> TriggerResult:
        self.download_dir.mkdir(parents=True, exist_ok=True)
        direct: list[DirectDelivery] = []
        pending: list[Category] = []
        failed: list[FailedTrigger] = []

        try:
            await self.open_session(credentials)
        except Exception as exc:
            logger.error("trigger_session_failed", error=str(exc))
            reason = f"session failed: {exc}"
            return TriggerResult(failed=[FailedTrigger(category=c, reason=reason) for c in windows])

        try:
            for category, window in windows.items():
                retrying = with_retry(self._retry_config, operation=f"request_export_{category.value}")
                request = retrying(self.request_export)
                try:
                    path = await request(category, window.to_platform())
                except Exception as exc:
                    logger.warning("export_trigger_failed", category=category.value, error=str(exc))
                    failed.append(FailedTrigger(category=category, reason=str(exc)))
                    continue

                if path is not None:
                    direct.append(DirectDelivery(category=category, path=path))
                    logger.info("export_direct_capture", category=category.value, path=str(path))
                else:
                    pending.append(category)
                    logger.info("export_pending_email", category=category.value)
        finally:
            try:
                await self.close_session()
            except Exception as exc:
                logger.warning("trigger_session_close_failed", error=str(exc))

        logger.info(
            "trigger_phase_complete",
            direct=len(direct),
            pending=len(pending),
            failed=len(failed),
        )
        return TriggerResult(direct=direct, pending=pending, failed=failed)
