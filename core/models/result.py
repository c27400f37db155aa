"""Explicit outcome type passed across component boundaries.

Ok carries a value, Skip means "nothing to do this cycle" and Fatal wraps an
error that aborts the dependent action (never the scheduler).
"""

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class Fatal:
    error: BaseException

    @property
    def reason(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


Result = Union[Ok[Any], Skip, Fatal]


def is_ok(result: Result) -> bool:
    return isinstance(result, Ok)


def unwrap(result: Result):
    """Return the Ok value or raise on Skip/Fatal."""
    if isinstance(result, Ok):
        return result.value
    if isinstance(result, Fatal):
        raise result.error
    raise ValueError(f"Cannot unwrap Skip: {result.reason}")
