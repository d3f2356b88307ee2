"""Backend credential providers.

The proxy does not acquire or refresh credentials itself. It asks a
TokenProvider for a bearer token before every backend call, so a provider
can refresh behind the scenes without the client being restarted.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class Credential:
    """A bearer token and its expiry (unix seconds, None if it never expires)."""

    token: str
    expires_at: float | None = None

    def expired(self, leeway: float = 60.0) -> bool:
        if self.expires_at is None:
            return False
        return time.time() + leeway >= self.expires_at


class TokenProvider(Protocol):
    """Supplies the bearer credential for backend calls."""

    async def get_credential(self) -> Credential:
        """Return a currently valid credential."""
        ...


class StaticTokenProvider:
    """Token provider for a fixed, pre-issued token."""

    def __init__(self, token: str):
        if not token:
            raise ValueError("token must not be empty")
        self._credential = Credential(token=token)

    async def get_credential(self) -> Credential:
        return self._credential
