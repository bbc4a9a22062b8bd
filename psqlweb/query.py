"""Streaming query execution for the console endpoint."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .connections import ConnectionLease, ConnectionProvisioner
from .encoding import encode_record
from .errors import PsqlwebError, QueryExecutionError
from .models import Credentials

LOG = logging.getLogger(__name__)

DEFAULT_FETCH_SIZE = 100

T = TypeVar("T")


class QueryRequest(BaseModel):
    """Validated console request; an invalid one cannot be constructed."""

    model_config = ConfigDict(populate_by_name=True)

    query: str
    params: list[Any] = Field(default_factory=list)
    fetch_size: int | None = Field(default=None, alias="fetchSize")

    @field_validator("query", mode="before")
    @classmethod
    def _check_query(cls, value: object) -> object:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("`query` must be a non-empty string.")
        return value

    @field_validator("params", mode="before")
    @classmethod
    def _check_params(cls, value: object) -> object:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("`params` must be an array when provided.")
        return value

    @field_validator("fetch_size", mode="before")
    @classmethod
    def _check_fetch_size(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValueError("`fetchSize` must be a positive integer when provided.")
        return value


class QueryState(str, Enum):
    """Lifecycle of a single streamed query."""

    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL_STATES = frozenset({QueryState.COMPLETED, QueryState.FAILED, QueryState.CANCELLED})


class QueryCancelled(Exception):
    """Raised internally when a cancellation token fires mid-await."""


class CancellationToken:
    """Cooperative cancellation signal observed at every suspension point."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Query cancelled by the client.") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token wins, the pending awaitable is cancelled and awaited
        before :class:`QueryCancelled` is raised, so the underlying
        connection is idle by the time the caller tears it down.
        """

        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise QueryCancelled(self.reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
        if task.cancelled():
            raise QueryCancelled(self.reason)
        return task.result()


class QueryStream:
    """One query execution, consumed as rows or newline-delimited JSON."""

    def __init__(
        self,
        provisioner: ConnectionProvisioner,
        request: QueryRequest,
        credentials: Credentials | None,
        *,
        fetch_size: int,
        cancel: CancellationToken | None = None,
    ) -> None:
        self._provisioner = provisioner
        self._request = request
        self._credentials = credentials
        self._fetch_size = fetch_size
        self._cancel = cancel or CancellationToken()
        self._state = QueryState.IDLE
        self._lease: ConnectionLease | None = None
        self._transaction: Any = None
        self._cursor: Any = None
        self._awaiting = False
        self._rows_sent = 0

    @property
    def state(self) -> QueryState:
        return self._state

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel

    @property
    def rows_sent(self) -> int:
        return self._rows_sent

    @property
    def fetch_size(self) -> int:
        return self._fetch_size

    async def start(self) -> None:
        """Acquire a connection and open a server-side cursor.

        Failures surface here, before the caller commits to a streaming
        response. A cancellation observed while connecting leaves the stream
        in ``CANCELLED`` with nothing to produce.
        """

        if self._state is not QueryState.IDLE:
            raise RuntimeError("Query stream has already been started.")
        self._state = QueryState.CONNECTING
        try:
            self._lease = await self._await(self._provisioner.acquire(self._credentials))
            connection = self._lease.connection
            self._transaction = connection.transaction()
            await self._await(self._transaction.start())
            self._cursor = await self._await(
                connection.cursor(self._request.query, *self._request.params)
            )
        except QueryCancelled:
            await self._finish(QueryState.CANCELLED)
            return
        except asyncio.CancelledError:
            await self._finish(QueryState.CANCELLED)
            raise
        except PsqlwebError:
            await self._finish(QueryState.FAILED)
            raise
        except Exception as exc:
            await self._finish(QueryState.FAILED)
            raise QueryExecutionError(str(exc) or "Failed to start query.") from exc
        if self._state in _TERMINAL_STATES:
            # Closed while the cursor was opening.
            await self._finish(self._state)
            return
        self._state = QueryState.STREAMING
        LOG.debug("Query stream opened", extra={"fetch_size": self._fetch_size})

    def records(self) -> AsyncIterator[dict[str, Any]]:
        """Yield rows as dictionaries in source order."""

        return self._produce(dict)

    def lines(self) -> AsyncIterator[str]:
        """Yield one JSON document per row, each terminated by a newline."""

        return self._produce(encode_record)

    async def close(self, reason: str = "Response stream cancelled by consumer.") -> None:
        """Stop the stream early; a no-op once the stream has finished."""

        self._cancel.cancel(reason)
        if self._awaiting:
            # The task iterating the stream observes the token and tears down.
            return
        await self._finish(QueryState.CANCELLED)

    async def _produce(self, transform: Callable[[Mapping[str, Any]], T]) -> AsyncIterator[T]:
        if self._state is QueryState.IDLE:
            await self.start()
        if self._state is not QueryState.STREAMING:
            return
        try:
            while True:
                if self._cancel.cancelled:
                    raise QueryCancelled(self._cancel.reason)
                batch = await self._await(self._cursor.fetch(self._fetch_size))
                if not batch:
                    break
                for record in batch:
                    if self._cancel.cancelled:
                        raise QueryCancelled(self._cancel.reason)
                    item = transform(record)
                    self._rows_sent += 1
                    yield item
        except QueryCancelled:
            await self._finish(QueryState.CANCELLED)
            return
        except (asyncio.CancelledError, GeneratorExit):
            await self._finish(QueryState.CANCELLED)
            raise
        except Exception as exc:
            await self._finish(QueryState.FAILED)
            LOG.warning(
                "Query stream failed",
                extra={"rows": self._rows_sent, "error_type": type(exc).__name__},
            )
            raise QueryExecutionError(str(exc) or "Unexpected error while executing query.") from exc
        try:
            await self._finish(QueryState.COMPLETED)
        except Exception as exc:
            self._state = QueryState.FAILED
            raise QueryExecutionError(str(exc) or "Failed to commit query.") from exc

    async def _await(self, awaitable: Awaitable[T]) -> T:
        self._awaiting = True
        try:
            return await self._cancel.guard(awaitable)
        finally:
            self._awaiting = False

    async def _finish(self, state: QueryState) -> None:
        """Enter a terminal state once, then tear down whatever is still open."""

        if self._state not in _TERMINAL_STATES:
            self._state = state
            LOG.debug(
                "Query stream finished",
                extra={"state": state.value, "rows": self._rows_sent},
            )
        await self._teardown(commit=self._state is QueryState.COMPLETED)

    async def _teardown(self, *, commit: bool) -> None:
        transaction, self._transaction = self._transaction, None
        self._cursor = None
        try:
            if transaction is not None:
                if commit:
                    await transaction.commit()
                else:
                    await self._rollback(transaction)
        finally:
            if self._lease is not None:
                await self._provisioner.release(self._lease)

    @staticmethod
    async def _rollback(transaction: Any) -> None:
        try:
            await transaction.rollback()
        except Exception:
            LOG.debug("Ignoring error while rolling back query transaction", exc_info=True)


class StreamingQueryExecutor:
    """Opens :class:`QueryStream` objects against provisioned connections."""

    def __init__(
        self,
        provisioner: ConnectionProvisioner,
        *,
        default_fetch_size: int = DEFAULT_FETCH_SIZE,
    ) -> None:
        if default_fetch_size <= 0:
            raise ValueError("default_fetch_size must be positive.")
        self._provisioner = provisioner
        self._default_fetch_size = default_fetch_size

    def open(
        self,
        request: QueryRequest,
        credentials: Credentials | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> QueryStream:
        return QueryStream(
            self._provisioner,
            request,
            credentials,
            fetch_size=request.fetch_size or self._default_fetch_size,
            cancel=cancel,
        )


__all__ = [
    "CancellationToken",
    "DEFAULT_FETCH_SIZE",
    "QueryRequest",
    "QueryState",
    "QueryStream",
    "StreamingQueryExecutor",
]
