"""Per-run category state and the first-writer-wins report file map."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path

import structlog

from .errors import StateTransitionError
from .models import Category, CategoryState, CategoryStatus

logger = structlog.get_logger()

S = CategoryStatus

# Failed is reachable from every non-terminal status.
_ALLOWED: dict[CategoryStatus, frozenset[CategoryStatus]] = {
    S.PENDING: frozenset({S.TRIGGERING, S.AWAITING_MESSAGE, S.DOWNLOADING, S.PARSING}),
    S.TRIGGERING: frozenset({S.DOWNLOADING, S.AWAITING_MESSAGE}),
    S.DOWNLOADING: frozenset({S.PARSING}),
    S.AWAITING_MESSAGE: frozenset({S.PARSING}),
    S.PARSING: frozenset({S.SAVED}),
    S.SAVED: frozenset(),
    S.FAILED: frozenset(),
}


class CategoryTracker:
    """Single source of truth for per-category progress in one run.

    States are immutable :class:`CategoryState` values replaced whole, so
    a snapshot never observes a half-written state.  Every transition is
    checked against the state machine; terminal states are final.
    """

    def __init__(self, categories: Iterable[Category]) -> None:
        self._states: dict[Category, CategoryState] = {c: CategoryState() for c in categories}

    @property
    def categories(self) -> list[Category]:
        return list(self._states)

    def get(self, category: Category) -> CategoryState:
        return self._states[category]

    def set(self, category: Category, state: CategoryState) -> None:
        current = self._states[category]
        if current.is_terminal:
            raise StateTransitionError(
                f"{category.value} is already {current.status.value}; cannot move to {state.status.value}"
            )
        if state.status is not S.FAILED and state.status not in _ALLOWED[current.status]:
            raise StateTransitionError(
                f"{category.value}: {current.status.value} -> {state.status.value} is not allowed"
            )
        self._states[category] = state
        logger.debug(
            "category_state_changed",
            category=category.value,
            previous=current.status.value,
            status=state.status.value,
        )

    def remaining_incomplete(self, of: Iterable[Category]) -> set[Category]:
        """Categories in *of* that have not reached a terminal state."""
        return {c for c in of if not self._states[c].is_terminal}

    def snapshot(self) -> dict[Category, CategoryState]:
        return dict(self._states)

    def count(self, status: CategoryStatus) -> int:
        return sum(1 for s in self._states.values() if s.status is status)

    @property
    def done(self) -> int:
        return sum(1 for s in self._states.values() if s.is_terminal)


class ReportFiles:
    """Fixed map of every category to its saved file (``None`` until saved).

    ``claim`` serialises deliveries per category, so a direct capture and
    an inbox message for the same category cannot both be saved, while
    different categories never wait on each other.
    """

    def __init__(self, categories: Iterable[Category]) -> None:
        self._files: dict[Category, Path | None] = {c: None for c in categories}
        self._locks: dict[Category, asyncio.Lock] = {c: asyncio.Lock() for c in self._files}

    def get(self, category: Category) -> Path | None:
        return self._files[category]

    def has(self, category: Category) -> bool:
        return self._files[category] is not None

    def set(self, category: Category, path: Path) -> None:
        if self._files[category] is not None:
            raise StateTransitionError(f"{category.value} already has a saved file")
        self._files[category] = path

    @asynccontextmanager
    async def claim(self, category: Category) -> AsyncIterator[None]:
        """Hold the per-category lock while checking and saving."""
        async with self._locks[category]:
            yield

    def present(self) -> dict[Category, Path]:
        return {c: p for c, p in self._files.items() if p is not None}

    def missing(self) -> list[Category]:
        return [c for c, p in self._files.items() if p is None]
