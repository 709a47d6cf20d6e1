"""Discriminated success/failure values returned by every core operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, NoReturn, TypeAlias, TypeGuard, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful outcome carrying ``value``."""

    value: T

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True, slots=True)
class Err:
    """Failed outcome carrying the error that caused it."""

    error: Exception

    def unwrap(self) -> NoReturn:
        """Raise the carried error.

        Intended for callers that prefer exceptions at their own boundary.
        """
        raise self.error


Result: TypeAlias = Ok[T] | Err


def is_ok(result: Result[T]) -> TypeGuard[Ok[T]]:
    return isinstance(result, Ok)


def is_err(result: Result[T]) -> TypeGuard[Err]:
    return isinstance(result, Err)
