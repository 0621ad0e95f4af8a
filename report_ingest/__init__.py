"""Report ingestion: trigger platform exports, collect them directly or by email, save per category."""

from .archive import RawReportArchive
from .classifier import classify, classify_archive_member, classify_filename, classify_subject
from .completeness import check_completeness
from .config import (
    ArchiveConfig,
    ImapConfig,
    PipelineConfig,
    PlatformConfig,
    RetryConfig,
    StorageConfig,
)
from .db import Database
from .errors import (
    CategorySaveError,
    ConfigurationError,
    IngestionError,
    NoReportsCollectedError,
    StateTransitionError,
    TriggerPhaseError,
)
from .handlers import CategorySaveHandler, SaveHandlerRegistry, default_registry
from .inbox import ImapInboxPoller, InboxPoller
from .logging import setup_logging
from .models import (
    ALL_CATEGORIES,
    Attachment,
    AttachmentKey,
    Category,
    CategoryState,
    CategoryStatus,
    CheckStatus,
    CompletenessReport,
    DateRange,
    DeliveryMethod,
    DirectDelivery,
    FailedTrigger,
    InboxMessage,
    ProgressEvent,
    RunResult,
    TriggerResult,
    Watermark,
)
from .orchestrator import ReportIngestionOrchestrator
from .progress import ProgressChannel
from .tracker import CategoryTracker, ReportFiles
from .trigger import PageTriggerDriver, PlatformCredentials, TriggerDriver
from .watermarks import SqlWatermarkStore, WatermarkStore
from .windows import widest_window, window_for

__all__ = [
    "ALL_CATEGORIES",
    "ArchiveConfig",
    "Attachment",
    "AttachmentKey",
    "Category",
    "CategorySaveError",
    "CategorySaveHandler",
    "CategoryState",
    "CategoryStatus",
    "CategoryTracker",
    "CheckStatus",
    "CompletenessReport",
    "ConfigurationError",
    "Database",
    "DateRange",
    "DeliveryMethod",
    "DirectDelivery",
    "FailedTrigger",
    "ImapConfig",
    "ImapInboxPoller",
    "InboxMessage",
    "InboxPoller",
    "IngestionError",
    "NoReportsCollectedError",
    "PageTriggerDriver",
    "PipelineConfig",
    "PlatformConfig",
    "PlatformCredentials",
    "ProgressChannel",
    "ProgressEvent",
    "RawReportArchive",
    "ReportFiles",
    "ReportIngestionOrchestrator",
    "RetryConfig",
    "RunResult",
    "SaveHandlerRegistry",
    "SqlWatermarkStore",
    "StateTransitionError",
    "StorageConfig",
    "TriggerDriver",
    "TriggerPhaseError",
    "TriggerResult",
    "Watermark",
    "WatermarkStore",
    "check_completeness",
    "classify",
    "classify_archive_member",
    "classify_filename",
    "classify_subject",
    "default_registry",
    "setup_logging",
    "widest_window",
    "window_for",
]
