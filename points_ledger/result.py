"""
Result container for fallible ledger operations.

Every validation, state transition, repository call and sync pass returns
either ``Ok(value)`` or ``Err(failure)`` so callers branch on the failure
kind instead of catching exceptions.
"""

from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, TypeVar

from .failures import Failure

T = TypeVar("T")
U = TypeVar("U")


class UnwrapError(Exception):
    pass


class Result(Generic[T]):
    @property
    def is_ok(self) -> bool:
        return isinstance(self, Ok)

    @property
    def is_err(self) -> bool:
        return isinstance(self, Err)

    @property
    def value(self) -> T:
        if isinstance(self, Ok):
            return self._value
        raise UnwrapError(f"Result is Err: {self.failure}")

    @property
    def failure(self) -> Failure:
        if isinstance(self, Err):
            return self._failure
        raise UnwrapError("Result is Ok, not Err")

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        if isinstance(self, Ok):
            return Ok(fn(self._value))
        return self

    def flat_map(self, fn: Callable[[T], "Result[U]"]) -> "Result[U]":
        if isinstance(self, Ok):
            return fn(self._value)
        return self

    def map_failure(self, fn: Callable[[Failure], Failure]) -> "Result[T]":
        if isinstance(self, Err):
            return Err(fn(self._failure))
        return self

    def fold(self, on_err: Callable[[Failure], U], on_ok: Callable[[T], U]) -> U:
        if isinstance(self, Ok):
            return on_ok(self._value)
        return on_err(self.failure)

    def unwrap_or(self, default: T) -> T:
        if isinstance(self, Ok):
            return self._value
        return default


@dataclass(frozen=True)
class Ok(Result[T]):
    _value: Any

    def __repr__(self) -> str:
        return f"Ok({self._value!r})"


@dataclass(frozen=True)
class Err(Result[T]):
    _failure: Failure

    def __repr__(self) -> str:
        return f"Err({self._failure!r})"


def collect(results: Iterable[Result[T]]) -> Result[list[T]]:
    values = []
    for result in results:
        if result.is_err:
            return result
        values.append(result.value)
    return Ok(values)
