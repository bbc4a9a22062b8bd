"""Per-credential connection pools backing the query and procedure paths."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

import asyncpg

from .config import Settings
from .errors import ConfigurationError
from .models import ConnectionDescriptor, Credentials

LOG = logging.getLogger(__name__)

# asyncpg's own min_size default; capped when a smaller max is configured.
_ASYNCPG_DEFAULT_MIN_SIZE = 10


class ConnectionPool(Protocol):
    """Subset of :class:`asyncpg.Pool` used by the provisioner."""

    async def acquire(self) -> Any: ...

    async def release(self, connection: Any) -> None: ...

    async def close(self) -> None: ...


PoolFactory = Callable[..., Awaitable[ConnectionPool]]


class ConnectionLease:
    """Exclusive hold on a pooled connection; releasing twice is a no-op."""

    def __init__(self, pool: ConnectionPool, connection: Any) -> None:
        self._pool = pool
        self._connection = connection
        self._released = False

    @property
    def connection(self) -> Any:
        if self._released:
            raise RuntimeError("Connection lease has already been released.")
        return self._connection

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self._pool.release(self._connection)
        except Exception:
            # The caller's outcome is already decided; keep the primary error.
            LOG.debug("Ignoring error while releasing connection", exc_info=True)


class ConnectionProvisioner:
    """Leases connections from pools keyed by connection descriptor."""

    def __init__(self, settings: Settings, *, pool_factory: PoolFactory | None = None) -> None:
        self._settings = settings
        self._pool_factory: PoolFactory = pool_factory or asyncpg.create_pool
        self._pools: dict[str, ConnectionPool] = {}
        self._pool_locks: dict[str, asyncio.Lock] = {}

    @property
    def pool_count(self) -> int:
        return len(self._pools)

    def descriptor_for(self, credentials: Credentials | None) -> ConnectionDescriptor:
        dsn = self._settings.dsn
        if not dsn:
            raise ConfigurationError(
                "PSQLWEB_DSN environment variable is required to establish a database connection."
            )
        return ConnectionDescriptor(dsn=dsn, credentials=credentials)

    async def acquire(self, credentials: Credentials | None) -> ConnectionLease:
        descriptor = self.descriptor_for(credentials)
        pool = await self._pool_for(descriptor)
        connection = await pool.acquire()
        return ConnectionLease(pool, connection)

    async def release(self, lease: ConnectionLease) -> None:
        await lease.release()

    @asynccontextmanager
    async def lease(self, credentials: Credentials | None) -> AsyncIterator[Any]:
        """Yield a live connection and return it to its pool on every exit path."""

        lease = await self.acquire(credentials)
        try:
            yield lease.connection
        finally:
            await self.release(lease)

    async def close(self) -> None:
        """Drain every pool (used on application shutdown)."""

        pools = list(self._pools.values())
        self._pools.clear()
        self._pool_locks.clear()
        for pool in pools:
            try:
                await pool.close()
            except Exception:  # pragma: no cover - best effort shutdown
                LOG.warning("Failed to close connection pool", exc_info=True)
        if pools:
            LOG.info("Closed connection pools", extra={"pools": len(pools)})

    async def _pool_for(self, descriptor: ConnectionDescriptor) -> ConnectionPool:
        key = descriptor.key
        pool = self._pools.get(key)
        if pool is not None:
            return pool
        # Locked per descriptor; a slow login only delays callers of the same pool.
        async with self._pool_locks.setdefault(key, asyncio.Lock()):
            pool = self._pools.get(key)
            if pool is None:
                pool = await self._pool_factory(**self._pool_kwargs(descriptor))
                self._pools[key] = pool
                LOG.info("Created connection pool", extra={"pools": len(self._pools)})
        return pool

    def _pool_kwargs(self, descriptor: ConnectionDescriptor) -> dict[str, object]:
        kwargs = descriptor.connect_kwargs()
        max_size = self._settings.pool_max_size
        if max_size is not None and max_size > 0:
            kwargs["max_size"] = max_size
            kwargs["min_size"] = min(_ASYNCPG_DEFAULT_MIN_SIZE, max_size)
        return kwargs


__all__ = [
    "ConnectionLease",
    "ConnectionPool",
    "ConnectionProvisioner",
    "PoolFactory",
]
