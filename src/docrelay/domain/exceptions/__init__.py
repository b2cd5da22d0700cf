"""Domain exceptions."""

from typing import Any

class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without parsing
    # str(exception). Don't raise this directly - always use a specific subclass so callers
    # (and the Err result wrapper) can tell what kind of failure happened.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message

class ValidationError(DomainException):
    """Input validation failed or an illegal transition was attempted.

    Recoverable, caller's fault: bad recipient list, non-primitive form value,
    submitting an already completed step, submitting into a closed session.

    HTTP Status: 400
    """

    pass

class EntityNotFoundError(DomainException):
    """Raised when a token or id does not resolve to anything.

    HTTP Status: 404
    """

    # Yo, entity_type/entity_id are kept separately so the exception handler can log them
    # structured. For tokens, pass the MASKED token as entity_id - full tokens never go
    # into logs or error bodies!
    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id

class ExpiredError(DomainException):
    """The link exists but its session is time-barred.

    Must stay distinguishable from EntityNotFoundError so front-ends can render
    "this link has expired" instead of "invalid link".

    HTTP Status: 410
    """

    def __init__(self, message: str = "Workflow session has expired") -> None:
        super().__init__(message)

class ConflictError(DomainException):
    """Lost a concurrency race (e.g. a concurrent submission completed the step first).

    HTTP Status: 409
    """

    pass

class RepositoryError(DomainException):
    """Durability layer failure. Always propagated, never swallowed.

    HTTP Status: 500
    """

    pass

class ConfigurationError(DomainException):
    """Application misconfiguration.

    HTTP Status: 503 (Service Unavailable)
    """

    pass

__all__ = [
    "ConfigurationError",
    "ConflictError",
    "DomainException",
    "EntityNotFoundError",
    "ExpiredError",
    "RepositoryError",
    "ValidationError",
]
