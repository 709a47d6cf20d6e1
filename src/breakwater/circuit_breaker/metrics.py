"""Observability hooks for circuit breakers."""

from typing import Protocol

from breakwater.circuit_breaker.state import CircuitState


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Every hook receives the operation key the event belongs to. Exceptions
    raised by listeners are swallowed by the breaker.
    """

    async def on_state_change(
        self, key: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_call_rejected(self, key: str) -> None:
        """Handle call rejection while the circuit is open."""

    async def on_call_succeeded(self, key: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    async def on_call_failed(self, key: str, exc: Exception, elapsed: float) -> None:
        """Handle failed protected call completion."""
