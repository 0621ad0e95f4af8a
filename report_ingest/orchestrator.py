"""Report ingestion orchestrator.

One run goes through these phases:

1. build a date window per category from its watermark;
2. trigger an export for every category;
3. concurrently save direct captures and poll the inbox for emailed
   exports, saving each category the moment its file arrives;
4. hand whatever was saved to the analytics stage.

Failures are category-scoped.  A run only fails outright when nothing
could be triggered or nothing was saved.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

import structlog

from .archive import RawReportArchive
from .classifier import classify, classify_archive_member
from .completeness import check_completeness, completeness_warnings
from .config import PipelineConfig
from .clock import SystemClock
from .errors import (
    CategorySaveError,
    ConfigurationError,
    NoReportsCollectedError,
    TriggerPhaseError,
)
from .handlers import SaveHandlerRegistry
from .inbox import InboxPoller
from .logging import bound_category, bound_run
from .models import (
    ALL_CATEGORIES,
    AttachmentKey,
    Category,
    CategoryState,
    CategoryStatus,
    CheckStatus,
    DateRange,
    DeliveryMethod,
    DirectDelivery,
    InboxMessage,
    RunResult,
    TriggerResult,
)
from .progress import TRIGGER_BAND_END, ProgressChannel, category_percent
from .tracker import CategoryTracker, ReportFiles
from .trigger import PlatformCredentials, TriggerDriver
from .watermarks import WatermarkStore
from .windows import widest_window, window_for

logger = structlog.get_logger()

AnalyticsStage = Callable[[dict[Category, Path], DateRange | None], Awaitable[None]]


class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


@dataclass
class _Run:
    """Mutable state of a single run; discarded when the run ends."""

    run_id: str
    categories: list[Category]
    windows: dict[Category, DateRange] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.tracker = CategoryTracker(self.categories)
        self.files = ReportFiles(self.categories)
        self.processed_messages: set[str] = set()
        self.inbox_polls = 0


class ReportIngestionOrchestrator:
    """Caller-owned orchestrator with injected collaborators.

    Instances hold no per-run state and may be reused for consecutive
    runs.  Progress is published on :attr:`progress`.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        inbox: InboxPoller,
        watermarks: WatermarkStore,
        handlers: SaveHandlerRegistry,
        trigger_driver: TriggerDriver | None = None,
        clock: Clock | None = None,
        progress: ProgressChannel | None = None,
        archive: RawReportArchive | None = None,
        analytics: AnalyticsStage | None = None,
        categories: Iterable[Category] = ALL_CATEGORIES,
    ) -> None:
        self._config = config
        self._inbox = inbox
        self._watermarks = watermarks
        self._handlers = handlers
        self._trigger_driver = trigger_driver
        self._clock: Clock = clock or SystemClock()
        self.progress = progress or ProgressChannel()
        self._archive = archive
        self._analytics = analytics
        self._categories = list(categories)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        credentials: PlatformCredentials,
        *,
        window_override: DateRange | None = None,
    ) -> RunResult:
        """Trigger every category, collect deliveries, hand off to analytics.

        Raises :class:`TriggerPhaseError` when no category could be
        triggered and :class:`NoReportsCollectedError` when nothing was
        saved.  Every other failure is reported in the result.
        """
        if self._trigger_driver is None:
            raise ConfigurationError("No trigger driver configured for a triggered run")
        credentials.require_complete()
        self._config.require_mailbox()

        started = self._clock.monotonic()
        run = _Run(run_id=_new_run_id(), categories=self._categories)
        self.progress.begin_run()

        with bound_run(run.run_id, mode="triggered"):
            logger.info("run_started", categories=len(run.categories))
            self._publish(run, "Building per-category date windows", 3)
            run.windows = await self.build_windows(window_override)

            for category in run.categories:
                run.tracker.set(category, CategoryState(status=CategoryStatus.TRIGGERING))
            self._publish(run, "Triggering report exports", 5)

            trigger_time = self._clock.now()
            try:
                outcome = await self._trigger_driver.trigger(credentials, dict(run.windows))
            except Exception as exc:
                raise TriggerPhaseError(f"Failed to trigger report exports: {exc}") from exc

            self._apply_trigger_result(run, outcome)
            if outcome.deliverable == 0:
                failed = ", ".join(f.category.value for f in outcome.failed) or "none"
                raise TriggerPhaseError(f"No report exports were triggered. Failed: {failed}")

            self._publish(run, "Processing deliveries", TRIGGER_BAND_END)
            anchor = trigger_time - timedelta(seconds=self._config.lookback_margin_seconds)
            deadline = self._clock.monotonic() + self._config.poll_timeout_seconds

            async with asyncio.TaskGroup() as tg:
                if outcome.pending:
                    tg.create_task(self._poll_inbox(run, set(outcome.pending), anchor, deadline))
                for delivery in outcome.direct:
                    tg.create_task(self._save_direct(run, delivery))

            return await self._finalize(run, started)

    async def run_inbox_only(self, lookback: timedelta | None = None) -> RunResult:
        """Pick up report emails already in the inbox, without triggering.

        Sweeps the inbox once for messages newer than *lookback*
        (default ``inbox_lookback_hours``) and saves every category found.
        """
        self._config.require_mailbox()
        lookback = lookback or timedelta(hours=self._config.inbox_lookback_hours)
        started = self._clock.monotonic()
        run = _Run(run_id=_new_run_id(), categories=self._categories)
        self.progress.begin_run()

        with bound_run(run.run_id, mode="inbox_only"):
            logger.info("run_started", lookback_seconds=lookback.total_seconds())
            self._publish(run, "Building per-category date windows", 3)
            run.windows = await self.build_windows()
            for category in run.categories:
                run.tracker.set(
                    category,
                    CategoryState(
                        status=CategoryStatus.AWAITING_MESSAGE,
                        delivery_method=DeliveryMethod.MESSAGE,
                    ),
                )
            self._publish(run, "Scanning inbox for report emails", TRIGGER_BAND_END)

            messages = await self._inbox.find_messages_since(self._clock.now() - lookback)
            run.inbox_polls += 1
            logger.info("inbox_sweep", messages=len(messages))
            for message in messages:
                if message.id in run.processed_messages:
                    continue
                if await self._handle_message(run, message):
                    run.processed_messages.add(message.id)

            return await self._finalize(run, started)

    async def build_windows(self, override: DateRange | None = None) -> dict[Category, DateRange]:
        """Per-category windows from watermarks, or *override* for every category."""
        if override is not None:
            return {c: override for c in self._categories}

        now = self._clock.now()
        windows: dict[Category, DateRange] = {}
        for category in self._categories:
            watermark = await self._watermarks.get(category)
            windows[category] = window_for(
                watermark,
                now=now,
                backfill_floor=self._config.backfill_floor,
            )
            logger.info(
                "category_window",
                category=category.value,
                start=windows[category].start.isoformat(),
                end=windows[category].end.isoformat(),
                incremental=watermark is not None,
            )
        return windows

    # ------------------------------------------------------------------
    # Trigger outcomes
    # ------------------------------------------------------------------

    def _apply_trigger_result(self, run: _Run, outcome: TriggerResult) -> None:
        for delivery in outcome.direct:
            run.tracker.set(
                delivery.category,
                CategoryState(status=CategoryStatus.DOWNLOADING, delivery_method=DeliveryMethod.DIRECT),
            )
        for category in outcome.pending:
            run.tracker.set(
                category,
                CategoryState(status=CategoryStatus.AWAITING_MESSAGE, delivery_method=DeliveryMethod.MESSAGE),
            )
        for failure in outcome.failed:
            run.tracker.set(failure.category, CategoryState.failed(failure.reason))
            run.warnings.append(f"{failure.category.value}: trigger failed: {failure.reason}")

        reported = {d.category for d in outcome.direct} | set(outcome.pending)
        reported |= {f.category for f in outcome.failed}
        for category in run.categories:
            if category not in reported:
                logger.warning("category_not_triggered", category=category.value)
                run.tracker.set(category, CategoryState.failed("not reported by trigger driver"))
                run.warnings.append(f"{category.value}: not reported by trigger driver")

        logger.info(
            "trigger_outcomes",
            direct=[d.category.value for d in outcome.direct],
            pending=[c.value for c in outcome.pending],
            failed=[f.category.value for f in outcome.failed],
        )

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    async def _save_direct(self, run: _Run, delivery: DirectDelivery) -> None:
        await self._deliver(run, delivery.category, delivery.path, DeliveryMethod.DIRECT)

    async def _deliver(self, run: _Run, category: Category, path: Path, method: DeliveryMethod) -> bool:
        """Save one delivered file unless the category is already settled.

        First successful save per category wins; later deliveries are
        logged and dropped.
        """
        with bound_category(category, method=method.value, path=str(path)):
            return await self._claim_and_save(run, category, path, method)

    async def _claim_and_save(self, run: _Run, category: Category, path: Path, method: DeliveryMethod) -> bool:
        async with run.files.claim(category):
            if run.files.has(category):
                logger.info("delivery_discarded", reason="category_already_saved")
                return False
            current = run.tracker.get(category)
            if current.is_terminal:
                logger.info("delivery_discarded", reason=f"category_{current.status.value}")
                return False

            run.tracker.set(category, CategoryState(status=CategoryStatus.PARSING, delivery_method=method))
            self._publish(run, f"Parsing {category.label}")
            try:
                count = await self._save(run, category, path)
            except CategorySaveError as exc:
                logger.error("category_save_failed", error=exc.message)
                run.tracker.set(category, CategoryState.failed(exc.message, method))
                run.warnings.append(f"{category.value}: {exc.message}")
                self._publish(run)
                return False
            except Exception as exc:
                logger.exception("category_save_crashed")
                run.tracker.set(category, CategoryState.failed(str(exc), method))
                run.warnings.append(f"{category.value}: {exc}")
                self._publish(run)
                return False

            run.files.set(category, path)
            run.tracker.set(category, CategoryState.saved(count, method))

        self._publish(run)
        await self._archive_file(run, category, path)
        return True

    async def _save(self, run: _Run, category: Category, path: Path) -> int:
        handler = self._handlers.get(category)
        if handler is None:
            raise CategorySaveError(category, "no save handler registered")
        window = run.windows.get(category) or widest_window(run.windows.values())
        if window is None:
            now = self._clock.now().date()
            window = DateRange(start=now, end=now)
        return await handler.save(path, window, snapshot_id=run.run_id)

    async def _archive_file(self, run: _Run, category: Category, path: Path) -> None:
        if self._archive is None:
            return
        try:
            await self._archive.upload(category, run.run_id, path)
        except Exception as exc:
            logger.warning("raw_report_archive_failed", category=category.value, error=str(exc))

    # ------------------------------------------------------------------
    # Inbox polling
    # ------------------------------------------------------------------

    async def _poll_inbox(
        self,
        run: _Run,
        pending: set[Category],
        anchor: datetime,
        deadline: float,
    ) -> None:
        """Poll until every pending category is settled or *deadline* passes.

        Always searches from the fixed *anchor* so a message landing
        between iterations is never missed; repeats are filtered by id.
        """
        started = self._clock.monotonic()
        logger.info(
            "inbox_poll_started",
            pending=sorted(c.value for c in pending),
            timeout_seconds=self._config.poll_timeout_seconds,
        )

        while run.tracker.remaining_incomplete(pending):
            if self._clock.monotonic() >= deadline:
                break

            try:
                messages = await self._inbox.find_messages_since(anchor)
            except Exception as exc:
                logger.warning("inbox_poll_failed", error=str(exc))
                messages = []
            run.inbox_polls += 1

            fresh = [m for m in messages if m.id not in run.processed_messages]
            for message in fresh:
                logger.info(
                    "inbox_message_found",
                    message_id=message.id,
                    subject=message.subject,
                    attachments=len(message.attachments),
                )
                if await self._handle_message(run, message):
                    run.processed_messages.add(message.id)

            waiting = run.tracker.remaining_incomplete(pending)
            if not waiting:
                break
            if fresh:
                logger.info("inbox_still_waiting", categories=sorted(c.value for c in waiting))

            remaining_time = deadline - self._clock.monotonic()
            if remaining_time <= 0:
                break
            await self._clock.sleep(min(self._config.poll_interval_seconds, remaining_time))

        elapsed = round(self._clock.monotonic() - started)
        unsatisfied = run.tracker.remaining_incomplete(pending)
        if unsatisfied:
            logger.warning(
                "inbox_poll_timed_out",
                elapsed_seconds=elapsed,
                missing=sorted(c.value for c in unsatisfied),
            )
            for category in sorted(unsatisfied, key=lambda c: c.value):
                run.warnings.append(f"{category.value}: no report email before the poll deadline")
        else:
            logger.info("inbox_poll_complete", elapsed_seconds=elapsed, polls=run.inbox_polls)

    async def _handle_message(self, run: _Run, message: InboxMessage) -> bool:
        """Download, classify and save one message's files.

        Returns ``False`` only if the download failed, so the message is
        retried on the next poll.  Everything else is logged and absorbed.
        """
        try:
            downloaded = await self._inbox.download_attachments(message)
        except Exception as exc:
            logger.warning("message_download_failed", message_id=message.id, error=str(exc))
            return False

        for key, path in downloaded.items():
            category = _classify(key)
            if category is None:
                logger.warning(
                    "message_unclassifiable",
                    message_id=message.id,
                    subject=key.subject,
                    filename=key.filename,
                )
                continue
            if category not in run.categories:
                logger.info("message_category_not_requested", category=category.value)
                continue
            if run.files.has(category):
                logger.info(
                    "message_skipped_already_saved",
                    message_id=message.id,
                    category=category.value,
                )
                continue
            await self._deliver(run, category, path, DeliveryMethod.MESSAGE)

        try:
            await self._inbox.mark_processed(message)
        except Exception as exc:
            logger.warning("mark_processed_failed", message_id=message.id, error=str(exc))
        return True

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def _finalize(self, run: _Run, started: float) -> RunResult:
        saved = run.files.present()
        saved_counts = {
            c: run.tracker.get(c).record_count or 0
            for c in run.categories
            if run.tracker.get(c).status is CategoryStatus.SAVED
        }
        missing = run.files.missing()
        logger.info(
            "run_collection_finished",
            saved=sorted(c.value for c in saved),
            missing=sorted(c.value for c in missing),
        )

        if not saved:
            raise NoReportsCollectedError("No reports were collected; nothing to process")

        total = len(run.categories)
        self.progress.publish(
            f"Running analytics ({len(saved)}/{total} categories)",
            78,
            run.tracker.snapshot(),
        )
        if self._analytics is not None:
            try:
                await self._analytics(saved, widest_window(run.windows.values()))
            except Exception as exc:
                logger.exception("analytics_stage_failed")
                run.warnings.append(f"analytics: {exc}")

        validation = check_completeness(saved_counts, self._config.min_records, run.categories)
        if not validation.passed:
            logger.warning(
                "completeness_check_failed",
                failed=[c.category.value for c in validation.with_status(CheckStatus.FAIL)],
            )
        run.warnings.extend(completeness_warnings(validation))

        duration_ms = int((self._clock.monotonic() - started) * 1000)
        self.progress.publish("Pipeline complete", 100, run.tracker.snapshot())
        logger.info("run_finished", saved=len(saved), missing=len(missing), duration_ms=duration_ms)
        return RunResult(
            run_id=run.run_id,
            success=True,
            saved_categories=saved_counts,
            missing_categories=missing,
            warnings=run.warnings,
            duration_ms=duration_ms,
            validation=validation,
        )

    def _publish(self, run: _Run, message: str | None = None, percent: int | None = None) -> None:
        total = len(run.categories)
        if percent is None:
            percent = category_percent(run.tracker.done, total)
        if message is None:
            saved = run.tracker.count(CategoryStatus.SAVED)
            message = f"{saved} of {total} categories saved"
        self.progress.publish(message, percent, run.tracker.snapshot())


def _classify(key: AttachmentKey) -> Category | None:
    if key.archive is not None:
        return classify_archive_member(key.subject, key.filename)
    return classify(key.subject, key.filename)


def _new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"
