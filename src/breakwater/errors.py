"""Shared error types for breakwater."""


class BreakwaterError(Exception):
    """Base exception for every error produced by breakwater."""


class OperationTimeoutError(BreakwaterError):
    """An operation attempt did not finish inside its deadline.

    Attributes:
        timeout_ms: Deadline that elapsed, in milliseconds.
    """

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"operation timed out after {timeout_ms}ms")
