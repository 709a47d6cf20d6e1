"""Circuit breaker state primitives."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "Closed"
    OPEN = "Open"
    HALF_OPEN = "HalfOpen"


@dataclass(frozen=True)
class BreakerStatus:
    """Admission state of one key.

    Attributes:
        status: Current circuit state.
        is_recovering: ``True`` only while ``OPEN`` and before the recovery
            timer has been armed.
    """

    status: CircuitState = CircuitState.CLOSED
    is_recovering: bool = False


@dataclass(frozen=True)
class Counters:
    """Call counters for the current counting window.

    ``total == success + fail`` holds by construction and ``fail_rate`` is
    always derived from ``fail`` and ``total``.
    """

    success: int = 0
    fail: int = 0

    def __post_init__(self) -> None:
        if self.success < 0 or self.fail < 0:
            raise ValueError("counters must be >= 0")

    @property
    def total(self) -> int:
        return self.success + self.fail

    @property
    def fail_rate(self) -> float:
        """Failed calls as a percentage of all calls, two decimals."""
        if self.total == 0:
            return 0
        return round(self.fail / self.total * 100, 2)

    def with_success(self) -> Counters:
        return dataclasses.replace(self, success=self.success + 1)

    def with_failure(self) -> Counters:
        return dataclasses.replace(self, fail=self.fail + 1)

    def to_dict(self) -> dict[str, int | float]:
        return {
            "total": self.total,
            "success": self.success,
            "fail": self.fail,
            "fail_rate": self.fail_rate,
        }


@dataclass(frozen=True)
class CacheRecord:
    """Stored state for one operation key.

    Attributes:
        expires_at: Instant after which the record is treated as absent.
        counters: Call counters for the current window.
        state: Admission state.
    """

    expires_at: datetime
    counters: Counters = Counters()
    state: BreakerStatus = BreakerStatus()

    @classmethod
    def empty(cls, lifetime_seconds: float) -> CacheRecord:
        """Build a fresh ``CLOSED`` record with zero counters."""
        return cls(expires_at=_utcnow() + timedelta(seconds=lifetime_seconds))

    def is_expired(self, now: datetime | None = None) -> bool:
        current = _utcnow() if now is None else now
        return self.expires_at <= current

    def _refreshed(self, lifetime_seconds: float, **changes: object) -> CacheRecord:
        return dataclasses.replace(
            self,
            expires_at=_utcnow() + timedelta(seconds=lifetime_seconds),
            **changes,  # type: ignore[arg-type]
        )

    def with_success(self, lifetime_seconds: float) -> CacheRecord:
        return self._refreshed(lifetime_seconds, counters=self.counters.with_success())

    def with_failure(self, lifetime_seconds: float) -> CacheRecord:
        return self._refreshed(lifetime_seconds, counters=self.counters.with_failure())

    def with_status(
        self,
        lifetime_seconds: float,
        status: CircuitState,
        *,
        is_recovering: bool = False,
    ) -> CacheRecord:
        return self._refreshed(
            lifetime_seconds,
            state=BreakerStatus(status=status, is_recovering=is_recovering),
        )

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly view for diagnostics."""
        return {
            "expires_at": self.expires_at.isoformat(),
            "counters": self.counters.to_dict(),
            "state": {
                "status": str(self.state.status),
                "is_recovering": self.state.is_recovering,
            },
        }
