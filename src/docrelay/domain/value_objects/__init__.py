"""Value objects for the workflow domain.

Hey future me - IDs are wrapped in tiny frozen dataclasses so a SessionId can never be
passed where a RecipientId is expected. They are stored as plain strings in the DB;
always go through from_string() when reading rows back.
"""

import math
import re
import uuid
from dataclasses import dataclass
from typing import Any

# Hey future me - this is the CLOSED sum type for submitted form values. Anything else
# (None, lists, nested dicts) is rejected at the boundary. The engine never looks inside.
FormValue = str | int | float | bool
FormData = dict[str, FormValue]

# Tokens are base32 (RFC 4648 alphabet, lowercase, no padding). Older tokens may be
# shorter, so only the lower bound is enforced.
_TOKEN_PATTERN = re.compile(r"^[a-z2-7]+$")
MIN_TOKEN_LENGTH = 10
MAX_TOKEN_LENGTH = 100


@dataclass(frozen=True)
class SessionId:
    """Workflow session identifier (UUID)."""

    value: uuid.UUID

    @classmethod
    def generate(cls) -> "SessionId":
        """Create a fresh random session id."""
        return cls(uuid.uuid4())

    @classmethod
    def from_string(cls, value: str) -> "SessionId":
        """Parse a session id; raises ValueError on malformed input."""
        return cls(uuid.UUID(str(value)))

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class RecipientId:
    """Recipient identifier (UUID)."""

    value: uuid.UUID

    @classmethod
    def generate(cls) -> "RecipientId":
        """Create a fresh random recipient id."""
        return cls(uuid.uuid4())

    @classmethod
    def from_string(cls, value: str) -> "RecipientId":
        """Parse a recipient id; raises ValueError on malformed input."""
        return cls(uuid.UUID(str(value)))

    def __str__(self) -> str:
        return str(self.value)


# Yo, AccessToken is the ONLY credential a recipient has - it IS the access URL. It must
# never embed session id, order index or recipient type. Compare with == only, never
# prefix/pattern matching. masked() is what goes into logs.
@dataclass(frozen=True)
class AccessToken:
    """Opaque per-recipient access token."""

    value: str

    def __post_init__(self) -> None:
        """Validate token shape."""
        if not is_well_formed_token(self.value):
            raise ValueError("Invalid access token")

    def masked(self) -> str:
        """Token prefix safe for log lines."""
        return f"{self.value[:6]}..."

    def __str__(self) -> str:
        return self.value


def is_well_formed_token(value: Any) -> bool:
    """Check whether a raw string could be an access token."""
    return (
        isinstance(value, str)
        and MIN_TOKEN_LENGTH <= len(value) <= MAX_TOKEN_LENGTH
        and bool(_TOKEN_PATTERN.match(value))
    )


def validate_form_data(form_data: Any) -> FormData:
    """Validate a submitted form payload.

    Args:
        form_data: Raw payload, expected to be a mapping of field name to primitive

    Returns:
        A shallow copy of the payload

    Raises:
        ValueError: If the payload is not a mapping or holds a non-primitive value
    """
    if not isinstance(form_data, dict):
        raise ValueError("Form data must be an object")

    validated: FormData = {}
    for key, value in form_data.items():
        if not isinstance(key, str) or not key:
            raise ValueError("Form field names must be non-empty strings")
        # bool is a subclass of int, so a single isinstance check covers all four
        if not isinstance(value, (str, int, float)):
            raise ValueError(f"Form field {key} must be a string, number, or boolean")
        # NaN and Infinity slip through json.loads but are not valid JSON on the way out
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"Form field {key} must be a finite number")
        validated[key] = value
    return validated


__all__ = [
    "AccessToken",
    "FormData",
    "FormValue",
    "MAX_TOKEN_LENGTH",
    "MIN_TOKEN_LENGTH",
    "RecipientId",
    "SessionId",
    "is_well_formed_token",
    "validate_form_data",
]
