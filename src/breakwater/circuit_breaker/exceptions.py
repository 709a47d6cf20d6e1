"""Circuit breaker exceptions.

These are never raised by the breaker itself; they travel inside ``Err``
results. Callers can distinguish between:
  - A call being rejected because the circuit is open.
  - A record lookup or write failing inside the TTL store.
"""

from breakwater.errors import BreakwaterError


class CircuitBreakerError(BreakwaterError):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """A call was rejected because the circuit is open.

    Attributes:
        key: Operation key whose circuit rejected the call.
        opened_now: ``True`` when this call is the one that tripped the
            breaker from ``CLOSED`` to ``OPEN``.
    """

    def __init__(self, key: str, *, opened_now: bool = False) -> None:
        """Initialize a circuit-open error payload.

        Args:
            key: Key rejecting the call.
            opened_now: Whether the rejection comes from the tripping call.
        """
        self.key = key
        self.opened_now = opened_now
        if opened_now:
            message = "circuit breaker has been opened"
        else:
            message = f"circuit breaker is on for key `{key}`"
        super().__init__(message)


class CacheError(CircuitBreakerError):
    """Base error for TTL store lookups and writes."""

    message = "cache error"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(self.message)


class CacheMissError(CacheError):
    """No record is stored for the key."""

    message = "no value in the cache found"


class CacheExpiredError(CacheError):
    """The record existed but its lifetime elapsed; it has been evicted."""

    message = "value from the cache expired"


class RejectedExpiredWriteError(CacheError):
    """A write was refused because the record had already expired."""

    message = "cannot set value which already expired"


class StoreUnavailableError(CacheError):
    """The backing store cannot serve requests."""

    message = "record store unavailable"
