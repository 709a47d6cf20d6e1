"""Core circuit breaker implementation."""

import asyncio
import sys
import threading
import time
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import TypeVar

import structlog

from breakwater.circuit_breaker.exceptions import CircuitOpenError
from breakwater.circuit_breaker.metrics import BreakerListener
from breakwater.circuit_breaker.state import CacheRecord, CircuitState
from breakwater.circuit_breaker.storage import (
    AbstractRecordStore,
    InMemoryRecordStore,
)
from breakwater.executor import ExecutionPolicy, Operation, TimeoutRetryExecutor
from breakwater.logging import (
    AnyLogger,
    get_logger,
    log_debug,
    log_info,
    log_warning,
)
from breakwater.result import Err, Result

T = TypeVar("T")


class _ProbeGate:
    """Allow at most one in-flight half-open probe per key."""

    def __init__(self) -> None:
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())
        self._thread_lock: threading.Lock | None = None
        if not self._gil_enabled:
            self._thread_lock = threading.Lock()
        self._held = False

    def try_acquire(self) -> bool:
        if self._thread_lock is None:
            if self._held:
                return False
            self._held = True
            return True

        with self._thread_lock:
            if self._held:
                return False
            self._held = True
            return True

    def release(self) -> None:
        if self._thread_lock is None:
            self._held = False
            return
        with self._thread_lock:
            self._held = False


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        fail_rate: Failure percentage (0-100) at which a ``CLOSED`` circuit
            opens. Compared with ``>=``.
        cache_lifetime_seconds: Lifetime of a key's record, refreshed on
            every write.
        switch_to_half_open_in_ms: Delay between an ``OPEN`` circuit arming
            its recovery timer and the switch to ``HALF_OPEN``.
        execution: Default deadline and retry budget for operations.
    """

    fail_rate: int
    cache_lifetime_seconds: float
    switch_to_half_open_in_ms: int
    execution: ExecutionPolicy = field(default_factory=ExecutionPolicy)

    def __post_init__(self) -> None:
        if not 0 <= self.fail_rate <= 100:
            raise ValueError("fail_rate must be between 0 and 100")
        if self.cache_lifetime_seconds <= 0:
            raise ValueError("cache_lifetime_seconds must be > 0")
        if self.switch_to_half_open_in_ms < 0:
            raise ValueError("switch_to_half_open_in_ms must be >= 0")


class CircuitBreaker:
    """Per-key circuit breaker around failing or slow async operations.

    One instance serves any number of keys. Counters, state and recovery
    timers are scoped per key and never interfere with each other. Every
    public operation returns a ``Result``; nothing is raised to the caller.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        *,
        store: AbstractRecordStore | None = None,
        logger: AnyLogger | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            config: Breaker behavior configuration.
            store: Record store backend. Defaults to a private in-memory store.
            logger: Structured logger. Defaults to the ``breakwater`` structlog
                logger.
            listeners: Optional listener hooks for breaker events.
        """
        self.config = config
        self._store = InMemoryRecordStore() if store is None else store
        self._logger = get_logger() if logger is None else logger
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._executor = TimeoutRetryExecutor(
            logger=self._logger, policy=config.execution
        )
        self._recovery_timers: dict[str, asyncio.Task[None]] = {}
        self._probe_gates: dict[str, _ProbeGate] = defaultdict(_ProbeGate)

    async def _emit_state_change(
        self, key: str, old: CircuitState, new: CircuitState
    ) -> None:
        for listener in self._listeners:
            try:
                await listener.on_state_change(key, old, new)
            except Exception:
                continue

    async def _emit_call_rejected(self, key: str) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(key)
            except Exception:
                continue

    async def _emit_call_succeeded(self, key: str, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(key, elapsed)
            except Exception:
                continue

    async def _emit_call_failed(self, key: str, exc: Exception, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(key, exc, elapsed)
            except Exception:
                continue

    def _empty_record(self) -> CacheRecord:
        return CacheRecord.empty(self.config.cache_lifetime_seconds)

    def has_pending_recovery(self, key: str) -> bool:
        """Return whether a recovery timer is armed for ``key``."""
        timer = self._recovery_timers.get(key)
        return timer is not None and not timer.done()

    def _forget_timer(self, key: str, task: asyncio.Task[None]) -> None:
        if self._recovery_timers.get(key) is task:
            del self._recovery_timers[key]

    def _cancel_recovery(self, key: str) -> None:
        timer = self._recovery_timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _cancel_all_recoveries(self) -> None:
        for timer in self._recovery_timers.values():
            timer.cancel()
        self._recovery_timers.clear()

    def _arm_recovery(self, key: str) -> None:
        """Schedule the switch to ``HALF_OPEN``, replacing a pending timer."""
        self._cancel_recovery(key)
        delay = self.config.switch_to_half_open_in_ms / 1000
        timer = asyncio.create_task(
            self._switch_to_half_open_later(key, delay),
            name=f"circuit_breaker:{key}:half_open",
        )
        self._recovery_timers[key] = timer
        timer.add_done_callback(partial(self._forget_timer, key))
        log_debug(
            self._logger,
            "circuit_breaker.recovery_armed",
            key=key,
            delay_ms=self.config.switch_to_half_open_in_ms,
        )

    async def _switch_to_half_open_later(self, key: str, delay: float) -> None:
        await asyncio.sleep(delay)
        lifetime = self.config.cache_lifetime_seconds
        previous: CircuitState | None = None

        def _to_half_open(record: CacheRecord) -> CacheRecord:
            nonlocal previous
            previous = record.state.status
            if previous == CircuitState.CLOSED:
                return record
            return record.with_status(lifetime, CircuitState.HALF_OPEN)

        result = await self._store.update(key, _to_half_open)
        if isinstance(result, Err):
            log_debug(
                self._logger,
                "circuit_breaker.recovery_skipped",
                key=key,
                reason=str(result.error),
            )
            return

        if previous == CircuitState.OPEN:
            log_info(self._logger, "circuit_breaker.half_opened", key=key)
            await self._emit_state_change(key, CircuitState.OPEN, CircuitState.HALF_OPEN)

    async def state(self, key: str) -> Result[CacheRecord]:
        """Return the record for ``key``, creating an empty one if needed.

        Never executes any operation.
        """
        return await self._store.get_or_create(key, self._empty_record)

    def state_all(self) -> Mapping[str, CacheRecord]:
        """Return a read-only snapshot of every stored record."""
        return self._store.get_all()

    async def clear_cache(self) -> None:
        """Forget every key and cancel all pending recovery timers."""
        self._cancel_all_recoveries()
        await self._store.clear()
        log_info(self._logger, "circuit_breaker.cache_cleared")

    async def aclose(self) -> None:
        """Cancel recovery timers and timed-out operations still running."""
        self._cancel_all_recoveries()
        self._executor.cancel_detached()

    async def request(
        self,
        key: str,
        operation: Operation[T],
        *,
        timeout_ms: int | None = None,
        retry_count: int | None = None,
    ) -> Result[T]:
        """Run ``operation`` under circuit breaker protection for ``key``.

        Args:
            key: Logical operation name the circuit is tracked under.
            operation: Zero-argument async callable to protect.
            timeout_ms: Per-attempt deadline override for this call.
            retry_count: Retry budget override for this call.

        Returns:
            The operation's result, or ``Err(CircuitOpenError)`` when the
            call is rejected without running the operation. Invalid
            overrides return ``Err(ValueError)`` without running the
            operation or touching the circuit.
        """
        with structlog.contextvars.bound_contextvars(circuit_key=key):
            policy = self._executor.resolve_policy(
                timeout_ms=timeout_ms, retry_count=retry_count
            )
            if isinstance(policy, Err):
                return policy

            record = await self.state(key)
            if isinstance(record, Err):
                log_warning(
                    self._logger,
                    "circuit_breaker.store_unavailable",
                    key=key,
                    error=str(record.error),
                )
                return await self._executor.run(
                    operation, timeout_ms=timeout_ms, retry_count=retry_count
                )

            status = record.value.state
            if status.status == CircuitState.OPEN:
                return await self._reject_open(key, status.is_recovering)

            if status.status == CircuitState.HALF_OPEN:
                return await self._probe(key, operation, timeout_ms, retry_count)

            fail_rate = record.value.counters.fail_rate
            if fail_rate >= self.config.fail_rate:
                return await self._open(key, fail_rate)

            return await self._execute(
                key, operation, timeout_ms, retry_count, probe=False
            )

    async def _open(self, key: str, fail_rate: float) -> Result[T]:
        lifetime = self.config.cache_lifetime_seconds
        threshold = self.config.fail_rate
        opened = False

        def _trip(record: CacheRecord) -> CacheRecord:
            nonlocal opened
            if record.state.status != CircuitState.CLOSED:
                return record
            if record.counters.fail_rate < threshold:
                return record
            opened = True
            return record.with_status(lifetime, CircuitState.OPEN, is_recovering=True)

        await self._store.update(key, _trip)
        if not opened:
            return await self._reject_open(key, is_recovering=False)

        log_warning(
            self._logger,
            "circuit_breaker.opened",
            key=key,
            fail_rate=fail_rate,
            threshold=self.config.fail_rate,
        )
        await self._emit_state_change(key, CircuitState.CLOSED, CircuitState.OPEN)
        await self._emit_call_rejected(key)
        return Err(CircuitOpenError(key, opened_now=True))

    async def _reject_open(self, key: str, is_recovering: bool) -> Result[T]:
        if is_recovering:
            lifetime = self.config.cache_lifetime_seconds
            claimed = False

            def _claim_recovery(record: CacheRecord) -> CacheRecord:
                nonlocal claimed
                if record.state.status != CircuitState.OPEN:
                    return record
                if not record.state.is_recovering:
                    return record
                claimed = True
                return record.with_status(lifetime, CircuitState.OPEN)

            await self._store.update(key, _claim_recovery)
            if claimed:
                self._arm_recovery(key)

        log_debug(self._logger, "circuit_breaker.rejected", key=key)
        await self._emit_call_rejected(key)
        return Err(CircuitOpenError(key))

    async def _probe(
        self,
        key: str,
        operation: Operation[T],
        timeout_ms: int | None,
        retry_count: int | None,
    ) -> Result[T]:
        gate = self._probe_gates[key]
        if not gate.try_acquire():
            log_debug(self._logger, "circuit_breaker.probe_in_flight", key=key)
            await self._emit_call_rejected(key)
            return Err(CircuitOpenError(key))
        try:
            return await self._execute(
                key, operation, timeout_ms, retry_count, probe=True
            )
        finally:
            gate.release()
            if self._probe_gates.get(key) is gate:
                del self._probe_gates[key]

    async def _execute(
        self,
        key: str,
        operation: Operation[T],
        timeout_ms: int | None,
        retry_count: int | None,
        *,
        probe: bool,
    ) -> Result[T]:
        lifetime = self.config.cache_lifetime_seconds
        start = time.monotonic()
        result = await self._executor.run(
            operation, timeout_ms=timeout_ms, retry_count=retry_count
        )
        elapsed = max(time.monotonic() - start, 0.0)

        if isinstance(result, Err):
            await self._emit_call_failed(key, result.error, elapsed)
            still_half_open = False

            def _count_failure(record: CacheRecord) -> CacheRecord:
                nonlocal still_half_open
                if probe and record.state.status != CircuitState.HALF_OPEN:
                    return record
                still_half_open = record.state.status == CircuitState.HALF_OPEN
                return record.with_failure(lifetime)

            updated = await self._store.update(key, _count_failure)
            if isinstance(updated, Err):
                log_debug(
                    self._logger,
                    "circuit_breaker.failure_not_recorded",
                    key=key,
                    reason=str(updated.error),
                )
            if probe:
                log_info(self._logger, "circuit_breaker.probe_failed", key=key)
                if still_half_open:
                    self._arm_recovery(key)
            return result

        await self._emit_call_succeeded(key, elapsed)
        if probe:
            self._cancel_recovery(key)
            await self._store.set(key, self._empty_record())
            log_info(self._logger, "circuit_breaker.closed", key=key)
            await self._emit_state_change(
                key, CircuitState.HALF_OPEN, CircuitState.CLOSED
            )
            return result

        updated = await self._store.update(
            key, lambda record: record.with_success(lifetime)
        )
        if isinstance(updated, Err):
            log_debug(
                self._logger,
                "circuit_breaker.success_not_recorded",
                key=key,
                reason=str(updated.error),
            )
        return result
