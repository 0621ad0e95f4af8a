"""Exception hierarchy for the ingestion pipeline.

Only :class:`ConfigurationError`, :class:`TriggerPhaseError` and
:class:`NoReportsCollectedError` escape an orchestrator run; everything
else is absorbed at the category boundary.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Category


class IngestionError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(IngestionError):
    """Credentials or mailbox settings are missing."""


class TriggerPhaseError(IngestionError):
    """No category was triggered for direct or message delivery."""


class NoReportsCollectedError(IngestionError):
    """The run finished without saving a single category."""


class StateTransitionError(IngestionError):
    """A category state change that the state machine does not allow."""


class CategorySaveError(IngestionError):
    """Parsing or persisting one category's file failed."""

    def __init__(self, category: Category, message: str) -> None:
        super().__init__(f"{category.value}: {message}")
        self.category = category
        self.message = message
