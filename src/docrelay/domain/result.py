"""Tagged result type for state-mutating engine calls.

Hey future me - expected failures ("already completed", "link expired", "unknown token")
are NOT raised by the engine. They come back as Err(...) so callers have to look at them.
Exceptions stay reserved for real faults (RepositoryError, bugs).

Usage:
    result = await engine.submit(token, form_data)
    match result:
        case Ok(view):
            ...
        case Err(error) if error.kind is ErrorKind.EXPIRED:
            ...

The HTTP layer just calls result.unwrap() and lets the exception handlers map the
re-raised domain exception to a status code.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, NoReturn, TypeVar

from docrelay.domain.exceptions import (
    ConflictError,
    DomainException,
    EntityNotFoundError,
    ExpiredError,
    ValidationError,
)

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Expected failure categories surfaced through Err."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    CONFLICT = "conflict"


_KIND_BY_TYPE: dict[type[DomainException], ErrorKind] = {
    ValidationError: ErrorKind.VALIDATION,
    EntityNotFoundError: ErrorKind.NOT_FOUND,
    ExpiredError: ErrorKind.EXPIRED,
    ConflictError: ErrorKind.CONFLICT,
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome."""

    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Return the wrapped value."""
        return self.value


@dataclass(frozen=True)
class Err:
    """Expected failure outcome wrapping the domain exception that describes it."""

    error: DomainException

    def __post_init__(self) -> None:
        """Only the four expected failure types may travel in an Err."""
        if type(self.error) not in _KIND_BY_TYPE:
            raise TypeError(f"{type(self.error).__name__} is not an expected failure")

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def kind(self) -> ErrorKind:
        return _KIND_BY_TYPE[type(self.error)]

    @property
    def message(self) -> str:
        return self.error.message

    def unwrap(self) -> NoReturn:
        """Re-raise the wrapped exception."""
        raise self.error


Result = Ok[T] | Err

__all__ = ["Err", "ErrorKind", "Ok", "Result"]
