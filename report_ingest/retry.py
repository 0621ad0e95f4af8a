"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

logger = structlog.get_logger()


def _retry_logger(operation: str | None, max_attempts: int) -> Callable[[RetryCallState], None]:
    def log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        logger.warning(
            "retrying_call",
            operation=operation or getattr(state.fn, "__qualname__", repr(state.fn)),
            attempt=state.attempt_number,
            max_attempts=max_attempts,
            next_wait_seconds=state.next_action.sleep if state.next_action else None,
            error=str(exc) if exc is not None else None,
        )

    return log_retry


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    operation: str | None = None,
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Usage::

        @with_retry(config.retry, retryable_exceptions=(imaplib.IMAP4.error,), operation="imap_search")
        async def search() -> list[str]: ...

    Each retry logs ``retrying_call`` with *operation* (default: the
    function's qualified name).  The last exception is re-raised once
    attempts are exhausted.
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=_retry_logger(operation, config.max_attempts),
        reraise=True,
    )
