"""Deadline-bounded retrying executor for async operations.

The executor knows nothing about circuit breakers. It runs one zero-argument
async operation, races every attempt against a fresh deadline and retries
failed or timed-out attempts immediately until the retry budget is spent.

Timed-out attempts are not cancelled. The operation keeps running in the
background while the executor stops waiting for it; the executor holds a
reference until the straggler finishes so it is not garbage collected.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
    wait_none,
)

from breakwater.errors import OperationTimeoutError
from breakwater.logging import AnyLogger, get_logger, log_error, log_info
from breakwater.result import Err, Ok, Result, is_err

T = TypeVar("T")

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_RETRY_COUNT = 5

Operation = Callable[[], Awaitable[Ok[T] | Err | T]]


@dataclass(frozen=True)
class ExecutionPolicy:
    """Deadline and retry budget applied to one operation run."""

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retry_count: int = DEFAULT_RETRY_COUNT

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if self.retry_count < 0:
            raise ValueError("retry_count must be >= 0")

    def with_overrides(
        self,
        *,
        timeout_ms: int | None = None,
        retry_count: int | None = None,
    ) -> ExecutionPolicy:
        """Return a policy with per-call values applied over this one."""
        if timeout_ms is None and retry_count is None:
            return self
        return dataclasses.replace(
            self,
            timeout_ms=self.timeout_ms if timeout_ms is None else timeout_ms,
            retry_count=self.retry_count if retry_count is None else retry_count,
        )


def _last_outcome(retry_state: RetryCallState) -> object:
    outcome = retry_state.outcome
    assert outcome is not None
    return outcome.result()


def build_attempt_retrying(
    *,
    retry_count: int,
    before_sleep: Callable[[RetryCallState], None] | None = None,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` that re-runs attempts returning ``Err``.

    Attempts are restarted immediately. Once the budget is spent the last
    ``Err`` ends the loop instead of raising ``RetryError``.
    """
    if before_sleep is None:
        return AsyncRetrying(
            retry=retry_if_result(is_err),
            stop=stop_after_attempt(retry_count + 1),
            wait=wait_none(),
            retry_error_callback=_last_outcome,
        )
    return AsyncRetrying(
        retry=retry_if_result(is_err),
        stop=stop_after_attempt(retry_count + 1),
        wait=wait_none(),
        before_sleep=before_sleep,
        retry_error_callback=_last_outcome,
    )


async def _run_as_result(operation: Operation[T]) -> Result[T]:
    try:
        outcome = await operation()
    except Exception as error:
        return Err(error)
    if isinstance(outcome, (Ok, Err)):
        return outcome
    return Ok(outcome)


class TimeoutRetryExecutor:
    """Run async operations with a per-attempt deadline and bounded retries."""

    def __init__(
        self,
        *,
        logger: AnyLogger | None = None,
        policy: ExecutionPolicy | None = None,
    ) -> None:
        """Build an executor.

        Args:
            logger: Logger receiving retry, success and failure events.
            policy: Default deadline and retry budget. Defaults to
                ``ExecutionPolicy()`` (5000 ms, 5 retries).
        """
        self.policy = ExecutionPolicy() if policy is None else policy
        self._logger = get_logger() if logger is None else logger
        self._detached: set[asyncio.Future[Result[object]]] = set()

    @property
    def detached_count(self) -> int:
        """Number of timed-out attempts still running in the background."""
        return len(self._detached)

    def _detach(self, attempt: asyncio.Future[Result[object]]) -> None:
        self._detached.add(attempt)
        attempt.add_done_callback(self._detached.discard)

    async def _attempt(self, operation: Operation[T], timeout_ms: int) -> Result[T]:
        attempt = asyncio.ensure_future(_run_as_result(operation))
        try:
            return await asyncio.wait_for(asyncio.shield(attempt), timeout_ms / 1000)
        except TimeoutError:
            self._detach(attempt)  # type: ignore[arg-type]
            return Err(OperationTimeoutError(timeout_ms))

    def resolve_policy(
        self,
        *,
        timeout_ms: int | None = None,
        retry_count: int | None = None,
    ) -> Result[ExecutionPolicy]:
        """Apply per-call overrides, returning ``Err(ValueError)`` if invalid."""
        try:
            return Ok(
                self.policy.with_overrides(
                    timeout_ms=timeout_ms, retry_count=retry_count
                )
            )
        except ValueError as error:
            log_error(
                self._logger,
                "operation.invalid_overrides",
                timeout_ms=timeout_ms,
                retry_count=retry_count,
                error=str(error),
            )
            return Err(error)

    async def run(
        self,
        operation: Operation[T],
        *,
        timeout_ms: int | None = None,
        retry_count: int | None = None,
    ) -> Result[T]:
        """Execute ``operation`` and return its outcome as a ``Result``.

        Args:
            operation: Zero-argument async callable. It may return ``Ok`` or
                ``Err``, return a plain value (wrapped in ``Ok``) or raise
                (wrapped in ``Err``).
            timeout_ms: Per-attempt deadline override.
            retry_count: Retry budget override. ``0`` means a single attempt.

        Returns:
            ``Ok`` with the operation's value, or ``Err`` carrying the
            operation's own error, an ``OperationTimeoutError``, or a
            ``ValueError`` for invalid overrides (the operation is not run).
        """
        resolved = self.resolve_policy(timeout_ms=timeout_ms, retry_count=retry_count)
        if isinstance(resolved, Err):
            return resolved
        policy = resolved.value

        def _log_retry(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            failure = None if outcome is None else outcome.result()
            log_info(
                self._logger,
                "operation.retrying",
                attempt=retry_state.attempt_number,
                retries_left=policy.retry_count - retry_state.attempt_number + 1,
                error=str(failure.error) if isinstance(failure, Err) else None,
            )

        retrying = build_attempt_retrying(
            retry_count=policy.retry_count, before_sleep=_log_retry
        )

        result: Result[T] = Err(OperationTimeoutError(policy.timeout_ms))
        attempts = 0
        async for attempt in retrying:
            with attempt:
                result = await self._attempt(operation, policy.timeout_ms)
                attempts = attempt.retry_state.attempt_number
            if not attempt.retry_state.outcome.failed:  # type: ignore[union-attr]
                attempt.retry_state.set_result(result)

        if isinstance(result, Err):
            log_error(
                self._logger,
                "operation.failed",
                attempts=attempts,
                error=str(result.error),
                error_type=type(result.error).__name__,
            )
            return result

        log_info(self._logger, "operation.succeeded", attempts=attempts)
        return result

    def cancel_detached(self) -> None:
        """Cancel timed-out attempts that are still running."""
        for attempt in tuple(self._detached):
            attempt.cancel()
