"""Retry helpers built on tenacity.

Transient provider failures (rate limits, 5xx, timeouts) are absorbed by the
component that owns the call. Each component builds its decorator from a
``RetryPolicy`` so backoff is ``base_delay * 2^attempt`` with a hard attempt
cap, and every sleep is logged with structured context.
"""

from typing import Any

from pydantic import BaseModel, Field
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.utils.logging import get_logger

logger = get_logger(__name__)


class RetryPolicy(BaseModel):
    """Bounded exponential backoff settings."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Log a retry before tenacity sleeps."""
    fn_name = retry_state.fn.__name__ if retry_state.fn else "unknown"
    exception = retry_state.outcome.exception() if retry_state.outcome else None

    logger.warning(
        "retry_attempt",
        function=fn_name,
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else 0,
        error=str(exception) if exception else None,
        error_type=type(exception).__name__ if exception else None,
    )


def create_retry_decorator(
    policy: RetryPolicy,
    exception_types: tuple[type[BaseException], ...] = (),
    predicate: Any = None,
) -> Any:
    """Create a tenacity retry decorator.

    Args:
        policy: Attempt cap and backoff timing.
        exception_types: Exception classes that are retried.
        predicate: Optional callable taking the exception and returning True
            when it should be retried. Used instead of ``exception_types``
            when the decision depends on the exception's attributes.

    Returns:
        Decorator that works on both sync and async callables. The last
        exception is re-raised unchanged once attempts run out.
    """
    if predicate is not None:
        retry_condition = retry_if_exception(predicate)
    else:
        retry_condition = retry_if_exception_type(exception_types)

    return retry(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.base_delay, min=0, max=policy.max_delay
        ),
        retry=retry_condition,
        before_sleep=log_retry_attempt,
        reraise=True,
    )
