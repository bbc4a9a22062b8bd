"""Session-scoped credential storage with sliding expiration."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Protocol, runtime_checkable

from .config import DEFAULT_SESSION_TTL_MS
from .models import Credentials

LOG = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = DEFAULT_SESSION_TTL_MS / 1000


@runtime_checkable
class CredentialStore(Protocol):
    """Protocol implemented by session credential stores."""

    @property
    def max_age_seconds(self) -> int:
        """Lifetime handed to the client cookie."""

    def create(self, credentials: Credentials) -> str:
        """Store credentials under a new token and return it."""

    def get(self, token: str) -> Credentials | None:
        """Return credentials for a live token, refreshing its expiry."""

    def set(self, token: str, credentials: Credentials) -> None:
        """Replace the credentials held by a token."""

    def delete(self, token: str) -> None:
        """Forget a token; unknown tokens are ignored."""


@dataclass(frozen=True, slots=True)
class SessionRecord:
    credentials: Credentials
    expires_at: float


class InMemoryCredentialStore:
    """Process-local store; records vanish on restart and expire lazily on lookup."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive.")
        self._ttl = ttl_seconds
        self._clock = clock
        self._records: dict[str, SessionRecord] = {}

    @property
    def max_age_seconds(self) -> int:
        return int(self._ttl)

    def __len__(self) -> int:
        return len(self._records)

    def create(self, credentials: Credentials) -> str:
        token = secrets.token_urlsafe(16)
        self._records[token] = self._record(credentials)
        LOG.debug("Created session", extra={"sessions": len(self._records)})
        return token

    def get(self, token: str) -> Credentials | None:
        record = self._records.get(token)
        if record is None:
            return None
        if record.expires_at <= self._clock():
            del self._records[token]
            LOG.debug("Dropped expired session", extra={"sessions": len(self._records)})
            return None
        self._records[token] = self._record(record.credentials)
        return record.credentials

    def set(self, token: str, credentials: Credentials) -> None:
        self._records[token] = self._record(credentials)

    def delete(self, token: str) -> None:
        self._records.pop(token, None)

    def _record(self, credentials: Credentials) -> SessionRecord:
        return SessionRecord(credentials=credentials, expires_at=self._clock() + self._ttl)


__all__ = ["CredentialStore", "InMemoryCredentialStore", "SessionRecord"]
