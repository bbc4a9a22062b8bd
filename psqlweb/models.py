"""Shared dataclasses used across the session, connection and query modules."""

from __future__ import annotations

from dataclasses import dataclass, field

from .errors import CredentialError

FIELD_SEPARATOR = ";"


@dataclass(frozen=True, slots=True)
class Credentials:
    """Database login held server-side for a session."""

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class ConnectionDescriptor:
    """Pooling key derived from the base DSN and optional session credentials."""

    dsn: str
    credentials: Credentials | None = None

    def __post_init__(self) -> None:
        if self.credentials is None:
            return
        if FIELD_SEPARATOR in self.credentials.username:
            raise CredentialError("Username must not contain semicolons.")
        if FIELD_SEPARATOR in self.credentials.password:
            raise CredentialError("Password must not contain semicolons.")

    @property
    def key(self) -> str:
        """Credential-bearing string; two descriptors share a pool only if keys match."""

        if self.credentials is None:
            return self.dsn
        return FIELD_SEPARATOR.join(
            (
                self.dsn,
                f"user={self.credentials.username}",
                f"password={self.credentials.password}",
            )
        )

    def connect_kwargs(self) -> dict[str, object]:
        kwargs: dict[str, object] = {"dsn": self.dsn}
        if self.credentials is not None:
            kwargs["user"] = self.credentials.username
            kwargs["password"] = self.credentials.password
        return kwargs

    def __repr__(self) -> str:
        user = self.credentials.username if self.credentials else None
        return f"ConnectionDescriptor(dsn={self.dsn!r}, user={user!r})"


__all__ = ["ConnectionDescriptor", "Credentials", "FIELD_SEPARATOR"]
