"""Error taxonomy shared by the service layers and the HTTP boundary."""

from __future__ import annotations


class PsqlwebError(RuntimeError):
    """Base class for errors surfaced to API callers."""


class InvalidInputError(PsqlwebError):
    """Raised when a request carries malformed or disallowed values."""


class CredentialError(InvalidInputError):
    """Raised when credentials cannot be turned into a connection descriptor."""


class AuthenticationError(PsqlwebError):
    """Raised when a protected operation has no usable session."""

    def __init__(self, message: str, *, clear_cookie: bool = False) -> None:
        super().__init__(message)
        self.clear_cookie = clear_cookie


class ConfigurationError(PsqlwebError):
    """Raised when the server is missing required configuration."""


class ExecutionError(PsqlwebError):
    """Raised when the database rejects or fails a statement."""


class QueryExecutionError(ExecutionError):
    """Raised when a streamed query fails to execute."""


class ProcedureExecutionError(ExecutionError):
    """Raised when a stored procedure lookup or call fails."""


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "CredentialError",
    "ExecutionError",
    "InvalidInputError",
    "ProcedureExecutionError",
    "PsqlwebError",
    "QueryExecutionError",
]
