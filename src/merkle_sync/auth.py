"""Pluggable caller authentication."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .errors import UnauthorizedError

BEARER = "Bearer "


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str


class CredentialVerifier(Protocol):
    """Turns a raw credential into a caller identity."""

    def verify(self, raw_credential: str) -> CallerIdentity:
        """Raises UnauthorizedError if the credential is rejected."""
        ...


class StaticTokenVerifier:
    """Development scheme: tokens of the form ``{prefix}{user_id}``."""

    def __init__(self, prefix: str = "dev-token-"):
        self.prefix = prefix

    def verify(self, raw_credential: str) -> CallerIdentity:
        if not raw_credential.startswith(self.prefix):
            raise UnauthorizedError("Invalid token format")
        user_id = raw_credential[len(self.prefix):]
        if not user_id:
            raise UnauthorizedError("Token missing userId")
        return CallerIdentity(user_id=user_id)


def parse_bearer(header: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer {token}`` header."""
    if not header:
        raise UnauthorizedError("Missing Authorization header")
    if not header.startswith(BEARER):
        raise UnauthorizedError("Invalid Authorization header format. Expected: Bearer {token}")
    return header[len(BEARER):].strip()
