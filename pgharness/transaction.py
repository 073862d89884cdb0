"""Run test actions against pooled connections.

An action is an async callable taking the connection (and, for fixture
tests, the group's fixture value). Every helper here borrows a connection
with ``async with``, so the connection goes back to the pool on every exit
path, including test failures and cancellation.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .logger import get_logger

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from .config import IsolationLevel
    from .lifecycle import GroupContext
    from .pool import StripedConnectionPool
    from .provision import DatabaseLauncher, EphemeralDatabase

logger: BoundLogger = get_logger(__name__)

type Action[T] = Callable[[Any], Awaitable[T]]
type FixtureAction[F, T] = Callable[[Any, F], Awaitable[T]]


@dataclass(frozen=True, slots=True)
class TestContext:
    """Shared state of one test group.

    ``ephemeral`` is ``None`` when the group runs against an externally
    supplied database; teardown only stops what setup launched.
    """

    __test__ = False

    pool: StripedConnectionPool
    connection_string: str
    ephemeral: EphemeralDatabase | None = None
    launcher: DatabaseLauncher | None = field(default=None, repr=False)

    async def arun[T](self, action: Action[T], *, isolation: IsolationLevel = "read_committed") -> T:
        """Run ``action`` in a committed transaction on a pooled connection."""
        return await arun_in_transaction(self.pool, action, isolation=isolation)

    async def arun_pooled[T](self, action: Action[T]) -> T:
        """Run ``action`` on a pooled connection without a transaction."""
        return await arun_pooled(self.pool, action)


async def arun_in_transaction[T](
    pool: StripedConnectionPool,
    action: Action[T],
    *,
    isolation: IsolationLevel = "read_committed",
    rollback: bool = False,
) -> T:
    """Run ``action`` inside a transaction on a pooled connection.

    Parameters
    ----------
    pool
        Pool to borrow the connection from. Waits while the pool is full.
    action
        Async callable receiving the connection.
    isolation
        Transaction isolation level.
    rollback
        Roll the transaction back even when ``action`` succeeds. Test bodies
        run this way so their writes never outlive the test.

    Returns
    -------
    T
        Whatever ``action`` returned.

    Raises
    ------
    BaseException
        Anything raised by ``action``, re-raised after the rollback.
    """
    async with pool.aacquire() as conn:
        tx = conn.transaction(isolation=isolation)
        await tx.start()
        try:
            result = await action(conn)
        except BaseException as e:
            try:
                await tx.rollback()
            except Exception:
                # the action's error is the one worth reporting
                logger.exception("Rollback failed after action error", exc_type=type(e).__name__)
            else:
                logger.debug("Transaction rolled back after failure", exc_type=type(e).__name__)
            raise

        if rollback:
            await tx.rollback()
        else:
            await tx.commit()
        return result


async def arun_pooled[T](pool: StripedConnectionPool, action: Action[T]) -> T:
    """Run ``action`` on a pooled connection with no implicit transaction."""
    async with pool.aacquire() as conn:
        return await action(conn)


async def awith_fixture[F, T](
    action: FixtureAction[F, T],
    group: GroupContext[F],
    *,
    isolation: IsolationLevel = "read_committed",
    rollback: bool = True,
) -> T:
    """Run ``action(conn, fixture)`` in a transaction, passing the group's fixture value."""
    fixture = group.fixture

    async def bound(conn: Any) -> T:
        return await action(conn, fixture)

    return await arun_in_transaction(group.context.pool, bound, isolation=isolation, rollback=rollback)


async def awithout_fixture[T](
    action: Action[T],
    group: GroupContext[Any],
    *,
    isolation: IsolationLevel = "read_committed",
    rollback: bool = True,
) -> T:
    """Run ``action(conn)`` in a transaction, ignoring the group's fixture value."""
    return await arun_in_transaction(group.context.pool, action, isolation=isolation, rollback=rollback)
