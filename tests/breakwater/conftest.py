from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from breakwater.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from breakwater.executor import ExecutionPolicy
from tests.breakwater.support.fakes import BreakerFactory, FakeClock, FakeLogger


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Freeze record and store clocks to a manually advanced instant."""
    clock = FakeClock()
    monkeypatch.setattr("breakwater.circuit_breaker.state._utcnow", clock.now)
    monkeypatch.setattr("breakwater.circuit_breaker.storage._utcnow", clock.now)
    return clock


@pytest_asyncio.fixture
async def make_breaker(fake_logger: FakeLogger) -> AsyncIterator[BreakerFactory]:
    """Build breakers with fast test defaults and close them afterwards."""
    created: list[CircuitBreaker] = []

    def _make(
        *,
        fail_rate: int = 75,
        cache_lifetime_seconds: float = 3600,
        switch_to_half_open_in_ms: int = 10,
        timeout_ms: int = 200,
        retry_count: int = 0,
        **kwargs: object,
    ) -> CircuitBreaker:
        breaker = CircuitBreaker(
            CircuitBreakerConfig(
                fail_rate=fail_rate,
                cache_lifetime_seconds=cache_lifetime_seconds,
                switch_to_half_open_in_ms=switch_to_half_open_in_ms,
                execution=ExecutionPolicy(
                    timeout_ms=timeout_ms, retry_count=retry_count
                ),
            ),
            logger=fake_logger,
            **kwargs,  # type: ignore[arg-type]
        )
        created.append(breaker)
        return breaker

    yield _make

    for breaker in created:
        await breaker.aclose()
