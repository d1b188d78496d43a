"""Bounded retry with backoff.

One combinator for every outbound integration (carrier calls, carrier
login, rate lookup, AWB assignment).  Built on ``tenacity`` so the
policy is declared once per call site instead of hand-written loops:

    call_with_retry(
        fetch,
        max_attempts=3,
        backoff=linear_backoff(2),
        is_retryable=lambda exc: isinstance(exc, CarrierRequestError),
        operation="carrier.assign_awb",
    )

``sleep`` is injectable so tests can run the full schedule instantly.
"""

from __future__ import annotations

import time
from typing import Callable, TypeVar

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
    wait_incrementing,
)
from tenacity.wait import wait_base

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def linear_backoff(base_delay: float) -> wait_base:
    """Wait ``attempt * base_delay`` seconds after each failed attempt."""
    return wait_incrementing(start=base_delay, increment=base_delay)


def no_backoff() -> wait_base:
    return wait_fixed(0)


def _always(_exc: BaseException) -> bool:
    return True


def call_with_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int,
    backoff: wait_base,
    is_retryable: Callable[[BaseException], bool] = _always,
    sleep: Callable[[float], None] = time.sleep,
    operation: str = "call",
) -> T:
    """Invoke ``fn`` up to ``max_attempts`` times.

    Non-retryable exceptions propagate immediately; once attempts are
    exhausted the last exception is re-raised unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1.")

    def _log_failure(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retry.attempt_failed",
            operation=operation,
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            error=str(exc),
        )

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=backoff,
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        after=_log_failure,
        reraise=True,
    )
    return retrying(fn)
