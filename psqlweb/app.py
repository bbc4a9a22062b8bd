"""FastAPI application factory for psqlweb."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse

from . import __version__
from .config import Settings, load_settings
from .connections import ConnectionProvisioner, PoolFactory
from .credentials import CredentialStore, InMemoryCredentialStore
from .errors import AuthenticationError, ConfigurationError, ExecutionError, InvalidInputError
from .procedures import ProcedureInvoker
from .query import StreamingQueryExecutor
from .routes import router
from .session import SessionBoundary

LOG = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    store: CredentialStore | None = None,
    pool_factory: PoolFactory | None = None,
) -> FastAPI:
    """Wire the credential store, connection pools and routes into an app."""

    settings = settings or load_settings()
    store = store or InMemoryCredentialStore(settings.session_ttl_seconds)
    provisioner = ConnectionProvisioner(settings, pool_factory=pool_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if not settings.dsn:
            LOG.warning("PSQLWEB_DSN is not set; database requests will fail until it is configured.")
        LOG.info(
            "psqlweb ready",
            extra={"query_auth": settings.query_auth, "pool_max_size": settings.pool_max_size},
        )
        yield
        await provisioner.close()

    app = FastAPI(title="psqlweb", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.boundary = SessionBoundary(store, secure_cookies=settings.production)
    app.state.provisioner = provisioner
    app.state.executor = StreamingQueryExecutor(provisioner, default_fetch_size=settings.fetch_size)
    app.state.invoker = ProcedureInvoker(provisioner)
    app.include_router(router)
    _install_error_handlers(app)
    return app


def _install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(InvalidInputError, _handle_invalid_input)
    app.add_exception_handler(AuthenticationError, _handle_authentication)
    app.add_exception_handler(ConfigurationError, _handle_configuration)
    app.add_exception_handler(ExecutionError, _handle_execution)


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> PlainTextResponse:
    return PlainTextResponse(validation_message(exc), status_code=400)


async def _handle_invalid_input(request: Request, exc: InvalidInputError) -> PlainTextResponse:
    return PlainTextResponse(str(exc), status_code=400)


async def _handle_authentication(request: Request, exc: AuthenticationError) -> PlainTextResponse:
    response = PlainTextResponse(str(exc), status_code=401)
    if exc.clear_cookie:
        request.app.state.boundary.clear_cookie(response)
    return response


async def _handle_configuration(request: Request, exc: ConfigurationError) -> PlainTextResponse:
    LOG.error("Configuration error", extra={"path": request.url.path, "error_msg": str(exc)})
    return PlainTextResponse(str(exc), status_code=500)


async def _handle_execution(request: Request, exc: ExecutionError) -> PlainTextResponse:
    LOG.warning("Database execution failed", extra={"path": request.url.path, "error_msg": str(exc)})
    return PlainTextResponse(str(exc), status_code=500)


def validation_message(exc: RequestValidationError) -> str:
    """Flatten pydantic errors into the plain-text message sent to clients."""

    messages: list[str] = []
    for error in exc.errors():
        kind = error.get("type")
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        if kind == "json_invalid":
            message = "Request body must be valid JSON."
        elif kind == "missing":
            field = location[-1] if location else "body"
            message = f"`{field}` is required." if location else "Request body is required."
        else:
            message = str(error.get("msg", "Invalid request."))
            message = message.removeprefix("Value error, ")
        if message not in messages:
            messages.append(message)
    return " ".join(messages) or "Invalid request."


__all__ = ["create_app", "validation_message"]
