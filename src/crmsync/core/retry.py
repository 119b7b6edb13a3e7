"""Bounded retry combinator shared by the API client, reconciliation and replication.

Wraps tenacity.AsyncRetrying so every caller parameterizes the same three
things (attempt count, backoff, retryable-outcome predicate) instead of
hand-writing its own loop. Outcomes are usually result values rather than
exceptions: the API client returns typed ApiResult failures, so retrying is
driven by retry_if_result and the final result is handed back unchanged
once attempts run out.

Usage:
    policy = RetryPolicy(max_attempts=4, base_delay=1.0)
    result = await policy.run(
        lambda attempt: client.send(...),
        should_retry=lambda r: not r.ok and r.error.transient,
        delay_hint=lambda r: r.error.retry_after,
    )
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget plus exponential backoff.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Seconds before the second attempt; doubled each time.
        max_delay: Optional cap on a computed (not hinted) delay.
    """

    max_attempts: int
    base_delay: float = 1.0
    max_delay: float | None = None

    def backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt: base * 2^(attempt-1)."""
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        *,
        should_retry: Callable[[T], bool] = lambda _result: False,
        delay_hint: Callable[[T], float | None] | None = None,
        retry_on: tuple[type[BaseException], ...] = (),
        sleep: SleepFn = asyncio.sleep,
        on_attempt: Callable[[int, T | None, BaseException | None], Awaitable[None]] | None = None,
        label: str = "operation",
    ) -> T:
        """Run operation(attempt) until it succeeds or the budget is spent.

        Args:
            operation: Coroutine factory receiving the 1-based attempt number.
            should_retry: Predicate over a returned value; True means transient.
            delay_hint: Optional override of the backoff for a given result
                (e.g. a retry-after header). None falls back to backoff().
            retry_on: Exception types that count as transient failures.
            sleep: Awaitable sleep, injectable so tests do not wait.
            on_attempt: Callback invoked after every attempt with either the
                result or the raised exception.
            label: Name used in log events.

        Returns:
            The last result produced. If the last attempt raised, the
            exception propagates.
        """
        attempt_number = 0

        async def _call() -> T:
            nonlocal attempt_number
            attempt_number += 1
            try:
                result = await operation(attempt_number)
            except retry_on as exc:
                if on_attempt is not None:
                    await on_attempt(attempt_number, None, exc)
                raise
            if on_attempt is not None:
                await on_attempt(attempt_number, result, None)
            return result

        def _wait(retry_state: RetryCallState) -> float:
            outcome = retry_state.outcome
            if delay_hint is not None and outcome is not None and not outcome.failed:
                hinted = delay_hint(outcome.result())
                if hinted is not None:
                    return max(float(hinted), 0.0)
            return self.backoff(retry_state.attempt_number)

        def _before_sleep(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "retry.scheduled",
                operation=label,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                delay_seconds=delay,
            )

        retry_condition = retry_if_result(should_retry)
        if retry_on:
            retry_condition = retry_condition | retry_if_exception_type(retry_on)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(self.max_attempts, 1)),
            wait=_wait,
            retry=retry_condition,
            sleep=sleep,
            before_sleep=_before_sleep,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return await retrying(_call)
