"""Per-key async circuit breaker backed by a TTL record store.

Key behavior notes:
  - Each key's record counts ``success``/``fail`` calls; ``fail_rate`` is
    derived from them. A ``CLOSED`` circuit whose fail rate reaches the
    threshold opens on the next call, and that call is rejected without running.
  - The first call rejected by an ``OPEN`` circuit arms a one-shot recovery
    timer. When it fires the key moves to ``HALF_OPEN``.
  - ``HALF_OPEN`` lets one probe through at a time. A successful probe
    resets the key to an empty ``CLOSED`` record. A failed probe is counted,
    the key stays ``HALF_OPEN`` and the recovery timer is re-armed.
  - If the store cannot produce a record, calls run without circuit gating.
  - No public operation raises: outcomes are ``Ok``/``Err`` results.
"""

from breakwater.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from breakwater.circuit_breaker.exceptions import (
    CacheError,
    CacheExpiredError,
    CacheMissError,
    CircuitBreakerError,
    CircuitOpenError,
    RejectedExpiredWriteError,
    StoreUnavailableError,
)
from breakwater.circuit_breaker.metrics import BreakerListener
from breakwater.circuit_breaker.state import (
    BreakerStatus,
    CacheRecord,
    CircuitState,
    Counters,
)
from breakwater.circuit_breaker.storage import (
    AbstractRecordStore,
    InMemoryRecordStore,
)

__all__ = [
    "AbstractRecordStore",
    "BreakerListener",
    "BreakerStatus",
    "CacheError",
    "CacheExpiredError",
    "CacheMissError",
    "CacheRecord",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "Counters",
    "InMemoryRecordStore",
    "RejectedExpiredWriteError",
    "StoreUnavailableError",
]
