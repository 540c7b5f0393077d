"""Bounded retries for optimistic-lock conflicts and storage timeouts."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import RetryCallState, retry, retry_if_exception, wait_exponential

from src.core.config import get_settings
from src.core.errors import CommerceError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

# Backoff between attempts
MIN_WAIT_SECONDS = 0.01
MAX_WAIT_SECONDS = 0.5


def is_retryable(error: BaseException) -> bool:
    """Check whether an error is a retryable commerce failure."""
    return isinstance(error, CommerceError) and error.retryable


def _max_attempts() -> int:
    return get_settings().conflict_max_retries


def _stop_after_configured_attempts(retry_state: RetryCallState) -> bool:
    return retry_state.attempt_number >= _max_attempts()


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying %s after %s (attempt %d/%d)",
        getattr(retry_state.fn, "__qualname__", "call"),
        type(error).__name__ if error else "error",
        retry_state.attempt_number,
        _max_attempts(),
    )


def retry_on_conflict(func: F) -> F:
    """Retry an async operation on ``ConcurrentModificationError`` or timeouts.

    The wrapped operation must reload whatever it mutates on each attempt.
    Attempts are bounded by ``conflict_max_retries``; the last error is re-raised.
    """
    return retry(
        retry=retry_if_exception(is_retryable),
        stop=_stop_after_configured_attempts,
        wait=wait_exponential(multiplier=MIN_WAIT_SECONDS, min=MIN_WAIT_SECONDS, max=MAX_WAIT_SECONDS),
        before_sleep=_log_retry,
        reraise=True,
    )(func)
