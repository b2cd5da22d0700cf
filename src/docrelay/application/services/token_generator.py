"""Access token generation."""

import base64
import secrets

# 20 random bytes = 160 bits of entropy = exactly 32 base32 chars, so no padding ever appears
TOKEN_BYTES = 20


# Hey future me - the token IS the credential, so it comes from `secrets`, never `random`.
# Base32 keeps it URL- and SMS-safe and case-insensitive (we emit lowercase). The token
# carries no information about the session, the order index or the recipient type.
class TokenGenerator:
    """Produces unguessable opaque access tokens."""

    def __init__(self, num_bytes: int = TOKEN_BYTES) -> None:
        if num_bytes < 10:
            raise ValueError("Tokens need at least 80 bits of entropy")
        self._num_bytes = num_bytes

    def generate(self) -> str:
        """Generate one token (lowercase RFC 4648 base32, unpadded)."""
        raw = secrets.token_bytes(self._num_bytes)
        return base64.b32encode(raw).decode("ascii").rstrip("=").lower()

    def generate_many(self, count: int) -> list[str]:
        """Generate `count` distinct tokens."""
        tokens: list[str] = []
        seen: set[str] = set()
        while len(tokens) < count:
            token = self.generate()
            if token not in seen:
                seen.add(token)
                tokens.append(token)
        return tokens
