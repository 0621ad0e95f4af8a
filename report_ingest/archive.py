"""S3 archive of raw report files.

Best-effort: the orchestrator logs upload failures and carries on.
All boto3 calls are wrapped with ``asyncio.to_thread()`` to avoid blocking.
"""

from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path

import boto3
import structlog

from .config import ArchiveConfig
from .models import Category

logger = structlog.get_logger()


class RawReportArchive:
    """Upload each saved report file under ``<prefix>/<category>/<run_id>/``."""

    def __init__(self, config: ArchiveConfig) -> None:
        self._config = config
        self._client = None  # type: ignore[assignment]

    @property
    def enabled(self) -> bool:
        return bool(self._config.bucket)

    async def start(self) -> None:
        """Create the boto3 S3 client (skipped when no bucket is configured)."""
        if not self.enabled:
            logger.info("report_archive_disabled", reason="empty_bucket")
            return
        kwargs: dict = {"region_name": self._config.region}
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        self._client = await asyncio.to_thread(boto3.client, "s3", **kwargs)
        logger.info("report_archive_started", bucket=self._config.bucket)

    async def stop(self) -> None:
        self._client = None

    async def upload(self, category: Category, run_id: str, path: Path) -> str | None:
        """Upload *path*; returns the ``s3://`` URI, or ``None`` when disabled."""
        if self._client is None:
            return None
        payload = await asyncio.to_thread(path.read_bytes)
        digest = hashlib.sha256(payload).hexdigest()[:12]
        key = f"{self._config.prefix}/{category.value}/{run_id}/{digest}_{path.name}"
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self._config.bucket,
            Key=key,
            Body=payload,
            ContentType="text/csv",
        )
        uri = f"s3://{self._config.bucket}/{key}"
        logger.debug("raw_report_archived", category=category.value, uri=uri, size=len(payload))
        return uri
