"""
utils/retry.py — Bounded-attempt exponential-backoff policy for async calls.

Uses tenacity under the hood. Logs each scheduled retry with structlog so
transient failures are observable without crashing the pipeline.

Usage:
    from estat_pipeline.utils.retry import retry_policy

    async for attempt in retry_policy(
        max_attempts=5, base_delay=1.0, retry_if=lambda exc: is_transient(exc)
    ):
        with attempt:
            await fetch_once()

Delays: base_delay * 2^(attempt-1), capped at max_delay (1 s, 2 s, 4 s, …).
The last exception is re-raised unchanged once attempts run out.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger(__name__)


def _log_before_sleep(name: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    attempt_log = log.bind(operation=name)

    def before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        attempt_log.warning(
            "retry_attempt",
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            delay_s=retry_state.next_action.sleep if retry_state.next_action else None,
            last_error=str(outcome.exception()) if outcome and outcome.failed else None,
        )

    return before_sleep


def retry_policy(
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_if: Callable[[BaseException], bool] = lambda exc: True,
    name: str = "call",
) -> AsyncRetrying:
    """
    Build an AsyncRetrying iterator with exponential backoff.

    Args:
        max_attempts: Total attempts before the last error is re-raised.
        base_delay:   Initial delay in seconds.
        max_delay:    Maximum delay cap in seconds.
        retry_if:     Predicate deciding whether an exception is transient.
        name:         Operation name used in log records.

    Returns:
        tenacity.AsyncRetrying to iterate with ``async for``.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception(retry_if),
        before_sleep=_log_before_sleep(name, max_attempts),
        reraise=True,
    )
