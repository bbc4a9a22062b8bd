"""Cookie-based session boundary in front of the credential store."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request, Response
from pydantic import BaseModel, field_validator

from .credentials import CredentialStore
from .errors import AuthenticationError
from .models import FIELD_SEPARATOR, Credentials

LOG = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "psqlweb-session"

MISSING_CREDENTIALS_MESSAGE = "Credentials are required. Please sign in again."
EXPIRED_CREDENTIALS_MESSAGE = "Credentials have expired. Please sign in again."


def _credential_field(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string.")
    trimmed = value.strip()
    if not trimmed:
        raise ValueError(f"{label} is required.")
    if FIELD_SEPARATOR in trimmed:
        raise ValueError(f"{label} must not contain semicolons.")
    return trimmed


class CredentialsPayload(BaseModel):
    """Body of ``POST /credentials``."""

    username: str
    password: str

    @field_validator("username", mode="before")
    @classmethod
    def _check_username(cls, value: object) -> str:
        return _credential_field(value, "Username")

    @field_validator("password", mode="before")
    @classmethod
    def _check_password(cls, value: object) -> str:
        return _credential_field(value, "Password")

    def to_credentials(self) -> Credentials:
        return Credentials(username=self.username, password=self.password)


@dataclass(frozen=True, slots=True)
class SessionLookup:
    """Outcome of resolving the session cookie on a request."""

    token: str | None
    credentials: Credentials | None

    @property
    def stale(self) -> bool:
        """A cookie was sent but no live session matches it."""

        return self.token is not None and self.credentials is None


class SessionBoundary:
    """Maps the credential store onto request cookies."""

    def __init__(self, store: CredentialStore, *, secure_cookies: bool = False) -> None:
        self._store = store
        self._secure = secure_cookies

    @property
    def store(self) -> CredentialStore:
        return self._store

    @staticmethod
    def token_from(request: Request) -> str | None:
        return request.cookies.get(SESSION_COOKIE_NAME) or None

    def lookup(self, request: Request) -> SessionLookup:
        token = self.token_from(request)
        if token is None:
            return SessionLookup(token=None, credentials=None)
        return SessionLookup(token=token, credentials=self._store.get(token))

    def save(self, request: Request, response: Response, payload: CredentialsPayload) -> str:
        """Store credentials, reusing the current session when it is still live."""

        credentials = payload.to_credentials()
        token = self.token_from(request)
        if token is not None and self._store.get(token) is not None:
            self._store.set(token, credentials)
        else:
            token = self._store.create(credentials)
            LOG.info("Started credential session")
        self.set_cookie(response, token)
        return token

    def logout(self, request: Request, response: Response) -> None:
        token = self.token_from(request)
        if token is not None:
            self._store.delete(token)
        self.clear_cookie(response)

    def require_credentials(self, request: Request) -> Credentials:
        """Return the caller's credentials or raise a 401-mapped error."""

        lookup = self.lookup(request)
        if lookup.token is None:
            raise AuthenticationError(MISSING_CREDENTIALS_MESSAGE, clear_cookie=False)
        if lookup.credentials is None:
            raise AuthenticationError(EXPIRED_CREDENTIALS_MESSAGE, clear_cookie=True)
        return lookup.credentials

    def set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            SESSION_COOKIE_NAME,
            token,
            max_age=self._store.max_age_seconds,
            path="/",
            secure=self._secure,
            httponly=True,
            samesite="lax",
        )

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(
            SESSION_COOKIE_NAME,
            path="/",
            secure=self._secure,
            httponly=True,
            samesite="lax",
        )


__all__ = [
    "CredentialsPayload",
    "EXPIRED_CREDENTIALS_MESSAGE",
    "MISSING_CREDENTIALS_MESSAGE",
    "SESSION_COOKIE_NAME",
    "SessionBoundary",
    "SessionLookup",
]
