"""HTTP routes for credentials, procedures and the query console."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

from .config import Settings
from .encoding import dumps
from .models import Credentials
from .procedures import ExecuteRequest, ParametersRequest, ProcedureInvoker
from .query import QueryRequest, QueryStream, StreamingQueryExecutor
from .session import CredentialsPayload, SessionBoundary

NDJSON_MEDIA_TYPE = "application/x-ndjson; charset=utf-8"

router = APIRouter()


class ConsoleJSONResponse(JSONResponse):
    """JSON response that understands database scalar types."""

    def render(self, content: Any) -> bytes:
        return dumps(content).encode("utf-8")


class QueryStreamResponse(StreamingResponse):
    """NDJSON response that always closes its query stream when the response ends."""

    def __init__(self, stream: QueryStream) -> None:
        super().__init__(
            stream.lines(),
            media_type=NDJSON_MEDIA_TYPE,
            headers={"Cache-Control": "no-store"},
        )
        self.query_stream = stream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.query_stream.close()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_boundary(request: Request) -> SessionBoundary:
    return request.app.state.boundary


def get_executor(request: Request) -> StreamingQueryExecutor:
    return request.app.state.executor


def get_invoker(request: Request) -> ProcedureInvoker:
    return request.app.state.invoker


def require_credentials(
    request: Request,
    boundary: SessionBoundary = Depends(get_boundary),
) -> Credentials:
    return boundary.require_credentials(request)


def query_credentials(
    request: Request,
    settings: Settings = Depends(get_settings),
    boundary: SessionBoundary = Depends(get_boundary),
) -> Credentials | None:
    """Session credentials in ``session`` mode; the shared connection otherwise."""

    if settings.query_auth == "session":
        return boundary.require_credentials(request)
    return None


@router.get("/credentials")
async def read_credentials(
    request: Request,
    boundary: SessionBoundary = Depends(get_boundary),
) -> Response:
    lookup = boundary.lookup(request)
    response = JSONResponse({"hasCredentials": lookup.credentials is not None})
    if lookup.stale:
        boundary.clear_cookie(response)
    return response


@router.post("/credentials", status_code=204)
async def save_credentials(
    payload: CredentialsPayload,
    request: Request,
    boundary: SessionBoundary = Depends(get_boundary),
) -> Response:
    response = Response(status_code=204)
    boundary.save(request, response, payload)
    return response


@router.delete("/credentials", status_code=204)
async def delete_credentials(
    request: Request,
    boundary: SessionBoundary = Depends(get_boundary),
) -> Response:
    response = Response(status_code=204)
    boundary.logout(request, response)
    return response


@router.get("/procedures")
async def list_procedures(
    credentials: Credentials = Depends(require_credentials),
    invoker: ProcedureInvoker = Depends(get_invoker),
) -> Response:
    procedures = await invoker.list_procedures(credentials)
    return ConsoleJSONResponse({"procedures": procedures})


@router.post("/procedures/parameters")
async def list_procedure_parameters(
    payload: ParametersRequest,
    credentials: Credentials = Depends(require_credentials),
    invoker: ProcedureInvoker = Depends(get_invoker),
) -> Response:
    parameters = await invoker.list_parameters(
        credentials, payload.schema_name, payload.specific_name
    )
    return ConsoleJSONResponse({"parameters": parameters})


@router.post("/procedures/execute")
async def execute_procedure(
    payload: ExecuteRequest,
    credentials: Credentials = Depends(require_credentials),
    invoker: ProcedureInvoker = Depends(get_invoker),
) -> Response:
    result = await invoker.execute(credentials, payload.schema_name, payload.name, payload.parameters)
    return ConsoleJSONResponse({"rows": result.rows, "columns": result.columns})


@router.post("/query")
async def run_query(
    payload: QueryRequest,
    credentials: Credentials | None = Depends(query_credentials),
    executor: StreamingQueryExecutor = Depends(get_executor),
) -> Response:
    stream = executor.open(payload, credentials)
    await stream.start()
    return QueryStreamResponse(stream)


__all__ = [
    "ConsoleJSONResponse",
    "NDJSON_MEDIA_TYPE",
    "QueryStreamResponse",
    "require_credentials",
    "router",
]
