"""Striped async connection pool for PostgreSQL using asyncpg.

The pool is split into ``stripes`` independent asyncpg pools so that
concurrent acquirers contend on different locks. Each stripe owns a share
of ``max_connections``; an acquirer that finds its stripe full waits for a
connection of that stripe to come back. No acquisition timeout is applied.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Self

import asyncpg
from asyncpg import Pool, Record

from .config import IsolationLevel, PoolSettings
from .exceptions import PoolNotInitializedError
from .logger import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from types import TracebackType

    from asyncpg.pool import PoolConnectionProxy
    from structlog.stdlib import BoundLogger

logger: BoundLogger = get_logger(__name__)


class StripedConnectionPool:
    """Bounded pool of reusable connections partitioned into stripes.

    Examples
    --------
    >>> async with StripedConnectionPool(dsn, PoolSettings(max_connections=5)) as pool:
    ...     async with pool.aacquire() as conn:
    ...         await conn.fetchval("SELECT 1")
    """

    __slots__ = ("_connection_string", "_init_lock", "_settings", "_stripes")

    def __init__(self, connection_string: str, settings: PoolSettings | None = None) -> None:
        self._connection_string = connection_string
        self._settings = settings or PoolSettings()
        self._stripes: list[Pool[Record]] | None = None
        self._init_lock = asyncio.Lock()

    async def __aenter__(self) -> Self:
        await self.ainitialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None and exc_val is not None:
            logger.error(
                "StripedConnectionPool context manager exiting with exception",
                exc_type=exc_type.__name__,
                exc_val=str(exc_val),
            )
        await self.aclose()

    @property
    def stripes(self) -> list[Pool[Record]]:
        """The underlying asyncpg pools, one per stripe.

        Raises
        ------
        PoolNotInitializedError
            If the pool has not been initialized or was already closed.
        """
        if self._stripes is None:
            msg = "Pool not initialized. Call ainitialize() first."
            raise PoolNotInitializedError(msg)
        return self._stripes

    @property
    def settings(self) -> PoolSettings:
        return self._settings

    async def ainitialize(self) -> None:
        """Create every stripe and check one connection per stripe.

        Idempotent. If any stripe fails to come up, the stripes created so far
        are closed before the error propagates.
        """
        async with self._init_lock:
            if self._stripes is not None:
                return

            stripes: list[Pool[Record]] = []
            try:
                for capacity in self._settings.stripe_capacities():
                    stripe = await asyncpg.create_pool(
                        dsn=self._connection_string,
                        min_size=0,
                        max_size=capacity,
                        max_inactive_connection_lifetime=self._settings.idle_lifetime,
                    )
                    stripes.append(stripe)
                    async with stripe.acquire() as conn:
                        await conn.execute("SELECT 1")
            except BaseException:
                for stripe in stripes:
                    await stripe.close()
                raise

            self._stripes = stripes
            logger.info(
                "StripedConnectionPool initialized",
                stripes=self._settings.stripes,
                max_connections=self._settings.max_connections,
                idle_lifetime=self._settings.idle_lifetime,
            )

    async def aclose(self) -> None:
        """Close every live connection in every stripe."""
        if self._stripes is None:
            return
        stripes, self._stripes = self._stripes, None
        for stripe in stripes:
            await stripe.close()
        logger.info("StripedConnectionPool closed", stripes=len(stripes))

    def _pick_stripe(self) -> Pool[Record]:
        stripes = self.stripes
        if len(stripes) == 1:
            return stripes[0]
        task = asyncio.current_task()
        return stripes[hash(task) % len(stripes)] if task is not None else stripes[0]

    @asynccontextmanager
    async def aacquire(self) -> AsyncIterator[PoolConnectionProxy[Record]]:
        """Acquire a connection, waiting while the stripe is at capacity.

        Yields
        ------
        PoolConnectionProxy[Record]
            A connection that is returned to its stripe on exit.
        """
        async with self._pick_stripe().acquire(timeout=None) as conn:
            yield conn

    @asynccontextmanager
    async def atransaction(
        self,
        isolation: IsolationLevel = "read_committed",
        *,
        readonly: bool = False,
        deferrable: bool = False,
    ) -> AsyncIterator[PoolConnectionProxy[Record]]:
        """Acquire a connection and run the block in a committed transaction."""
        async with (
            self.aacquire() as conn,
            conn.transaction(isolation=isolation, readonly=readonly, deferrable=deferrable),
        ):
            yield conn

    @property
    def is_closed(self) -> bool:
        return self._stripes is None

    @property
    def pool_size(self) -> int:
        """Live connections across all stripes."""
        if self._stripes is None:
            return 0
        return sum(stripe.get_size() for stripe in self._stripes)

    @property
    def pool_idle_size(self) -> int:
        if self._stripes is None:
            return 0
        return sum(stripe.get_idle_size() for stripe in self._stripes)

    @property
    def pool_max_size(self) -> int:
        return self._settings.max_connections


async def acreate_pool(connection_string: str, settings: PoolSettings | None = None) -> StripedConnectionPool:
    """Create and initialize a `StripedConnectionPool`."""
    pool = StripedConnectionPool(connection_string, settings)
    await pool.ainitialize()
    return pool


async def adestroy_pool(pool: StripedConnectionPool) -> None:
    """Close every connection of ``pool``. Call once per pool."""
    await pool.aclose()
