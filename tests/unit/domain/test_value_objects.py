"""Tests for workflow value objects."""

import uuid

import pytest

from docrelay.domain.value_objects import (
    AccessToken,
    RecipientId,
    SessionId,
    is_well_formed_token,
    validate_form_data,
)


class TestIds:
    """Session and recipient identifiers."""

    def test_generate_produces_distinct_ids(self) -> None:
        """Two generated ids never collide."""
        assert SessionId.generate() != SessionId.generate()
        assert RecipientId.generate() != RecipientId.generate()

    def test_from_string_round_trip(self) -> None:
        """String form parses back to an equal id."""
        session_id = SessionId.generate()
        assert SessionId.from_string(str(session_id)) == session_id

    def test_from_string_rejects_garbage(self) -> None:
        """Malformed UUIDs raise ValueError."""
        with pytest.raises(ValueError):
            SessionId.from_string("not-a-uuid")

    def test_session_and_recipient_ids_are_different_types(self) -> None:
        """Same UUID wrapped in different id types does not compare equal."""
        raw = uuid.uuid4()
        assert SessionId(raw) != RecipientId(raw)


class TestAccessToken:
    """Access token shape checks."""

    def test_accepts_lowercase_base32(self) -> None:
        token = AccessToken("abcdefghijklmnopqrstuvwxyz234567")
        assert token.value == "abcdefghijklmnopqrstuvwxyz234567"

    @pytest.mark.parametrize(
        "value",
        [
            "short",  # below minimum length
            "ABCDEFGHIJKLMNOP",  # uppercase
            "abcdefghij0189",  # 0, 1, 8, 9 are not base32
            "abcdefghij====",  # padding
            "a" * 101,  # too long
        ],
    )
    def test_rejects_malformed_values(self, value: str) -> None:
        assert not is_well_formed_token(value)
        with pytest.raises(ValueError):
            AccessToken(value)

    def test_non_string_is_not_a_token(self) -> None:
        assert not is_well_formed_token(None)
        assert not is_well_formed_token(12345678901)

    def test_masked_only_shows_prefix(self) -> None:
        """Logs only ever see the first 6 characters."""
        token = AccessToken("abcdefghijklmnopqrstuvwxyz")
        assert token.masked() == "abcdef..."
        assert "ghij" not in token.masked()


class TestFormData:
    """Closed form value type: str | int | float | bool."""

    def test_accepts_primitives(self) -> None:
        data = {"name": "Jane", "age": 42, "dose": 2.5, "consent": True}
        assert validate_form_data(data) == data

    def test_returns_copy(self) -> None:
        data = {"name": "Jane"}
        result = validate_form_data(data)
        result["name"] = "changed"
        assert data["name"] == "Jane"

    def test_empty_object_is_valid(self) -> None:
        assert validate_form_data({}) == {}

    @pytest.mark.parametrize("value", [None, ["a"], {"nested": 1}, object()])
    def test_rejects_non_primitive_values(self, value: object) -> None:
        with pytest.raises(ValueError, match="field"):
            validate_form_data({"field": value})

    @pytest.mark.parametrize("payload", [None, [], "text", 42])
    def test_rejects_non_object_payload(self, payload: object) -> None:
        with pytest.raises(ValueError, match="must be an object"):
            validate_form_data(payload)

    def test_rejects_empty_field_name(self) -> None:
        with pytest.raises(ValueError, match="non-empty"):
            validate_form_data({"": "x"})

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_rejects_non_finite_numbers(self, value: float) -> None:
        with pytest.raises(ValueError, match="finite"):
            validate_form_data({"dose": value})
