"""Shared fakes standing in for asyncpg pools, connections and cursors."""

from __future__ import annotations

import asyncio
from typing import Any, Sequence

import pytest

from psqlweb.config import Settings

TEST_DSN = "postgresql://db.example:5432/app"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeTransaction:
    def __init__(self, *, commit_error: Exception | None = None) -> None:
        self.started = False
        self.committed = False
        self.rolled_back = False
        self._commit_error = commit_error

    async def start(self) -> None:
        self.started = True

    async def commit(self) -> None:
        if self._commit_error is not None:
            raise self._commit_error
        self.committed = True

    async def rollback(self) -> None:
        self.rolled_back = True


class FakeCursor:
    """Server-side cursor; with a gate, fetches after the first ``free_fetches`` block on it."""

    def __init__(
        self,
        rows: Sequence[Any],
        *,
        gate: asyncio.Event | None = None,
        free_fetches: int = 0,
    ) -> None:
        self._rows = list(rows)
        self._offset = 0
        self._gate = gate
        self._free_fetches = free_fetches
        self.fetch_sizes: list[int] = []
        self.fetch_started = asyncio.Event()
        self.fetch_blocked = asyncio.Event()
        self.fetch_cancelled = False

    async def fetch(self, n: int) -> list[Any]:
        self.fetch_sizes.append(n)
        self.fetch_started.set()
        if self._gate is not None and len(self.fetch_sizes) > self._free_fetches:
            self.fetch_blocked.set()
            try:
                await self._gate.wait()
            except asyncio.CancelledError:
                self.fetch_cancelled = True
                raise
        batch = self._rows[self._offset : self._offset + n]
        self._offset += len(batch)
        return batch


class FakeConnection:
    def __init__(
        self,
        rows: Sequence[Any] = (),
        *,
        fetch_rows: Sequence[Any] = (),
        gate: asyncio.Event | None = None,
        free_fetches: int = 0,
        cursor_error: Exception | None = None,
        fetch_error: Exception | None = None,
        commit_error: Exception | None = None,
    ) -> None:
        self.rows = list(rows)
        self.fetch_rows = list(fetch_rows)
        self._gate = gate
        self._free_fetches = free_fetches
        self._cursor_error = cursor_error
        self._fetch_error = fetch_error
        self._commit_error = commit_error
        self.transactions: list[FakeTransaction] = []
        self.cursors: list[FakeCursor] = []
        self.cursor_calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fetch_calls: list[tuple[str, tuple[Any, ...]]] = []

    def transaction(self) -> FakeTransaction:
        transaction = FakeTransaction(commit_error=self._commit_error)
        self.transactions.append(transaction)
        return transaction

    async def cursor(self, sql: str, *args: Any) -> FakeCursor:
        self.cursor_calls.append((sql, args))
        if self._cursor_error is not None:
            raise self._cursor_error
        cursor = FakeCursor(self.rows, gate=self._gate, free_fetches=self._free_fetches)
        self.cursors.append(cursor)
        return cursor

    async def fetch(self, sql: str, *args: Any) -> list[Any]:
        self.fetch_calls.append((sql, args))
        if self._fetch_error is not None:
            raise self._fetch_error
        return list(self.fetch_rows)


class FakePool:
    def __init__(self, connection: FakeConnection, *, release_error: Exception | None = None) -> None:
        self.connection = connection
        self.acquired = 0
        self.released: list[FakeConnection] = []
        self.closed = False
        self._release_error = release_error

    async def acquire(self) -> FakeConnection:
        self.acquired += 1
        return self.connection

    async def release(self, connection: FakeConnection) -> None:
        self.released.append(connection)
        if self._release_error is not None:
            raise self._release_error

    async def close(self) -> None:
        self.closed = True


class FakePoolFactory:
    """Async callable matching ``asyncpg.create_pool``; every pool shares one connection."""

    def __init__(
        self,
        connection: FakeConnection | None = None,
        *,
        release_error: Exception | None = None,
    ) -> None:
        self.connection = connection or FakeConnection()
        self.calls: list[dict[str, Any]] = []
        self.pools: list[FakePool] = []
        self._release_error = release_error

    async def __call__(self, **kwargs: Any) -> FakePool:
        self.calls.append(kwargs)
        await asyncio.sleep(0)
        pool = FakePool(self.connection, release_error=self._release_error)
        self.pools.append(pool)
        return pool

    @property
    def acquired(self) -> int:
        return sum(pool.acquired for pool in self.pools)

    @property
    def released(self) -> int:
        return sum(len(pool.released) for pool in self.pools)


@pytest.fixture
def settings() -> Settings:
    return Settings(dsn=TEST_DSN)


@pytest.fixture
def pool_factory() -> FakePoolFactory:
    return FakePoolFactory()
