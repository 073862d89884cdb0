"""Set up and tear down the database for one group of tests.

Setup:    provision -> migrate up -> create pool -> load fixtures
Teardown: migrate down -> destroy pool -> stop the launched database

Migrations run on a dedicated connection outside the pool. Teardown runs
every step even when an earlier one fails; the failures are logged and,
with ``strict_teardown`` on, raised together as a `TeardownError` once
nothing is left running.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import asyncpg

from .config import HarnessSettings
from .exceptions import TeardownError
from .logger import get_logger
from .migrations import amigrate_down, amigrate_up
from .pool import acreate_pool, adestroy_pool
from .provision import mask_dsn, resolve_connection, stop_ephemeral
from .transaction import TestContext, arun_pooled

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from structlog.stdlib import BoundLogger

    from .migrations import Migration
    from .pool import StripedConnectionPool
    from .provision import DatabaseLauncher, EphemeralDatabase

logger: BoundLogger = get_logger(__name__)

type Fixtures[F] = Callable[[Any], Awaitable[F]]


@dataclass(frozen=True)
class GroupContext[F]:
    """What every test of a group sees.

    The shared `TestContext`, the fixture value and the settings the group
    was set up with.
    """

    context: TestContext
    fixture: F
    settings: HarnessSettings | None = None


@asynccontextmanager
async def adedicated_connection(connection_string: str) -> AsyncIterator[asyncpg.Connection]:
    """Open a connection outside the pool, closed on exit."""
    conn = await asyncpg.connect(connection_string)
    try:
        yield conn
    finally:
        await conn.close()


async def _amigrate(
    connection_string: str,
    migrations: Sequence[Migration],
    settings: HarnessSettings,
    *,
    up: bool,
) -> None:
    async with adedicated_connection(connection_string) as conn:
        if up:
            await amigrate_up(conn, migrations, table=settings.migrations_table)
        else:
            await amigrate_down(conn, migrations, table=settings.migrations_table)


async def _acleanup(
    migrations: Sequence[Migration] | None,
    connection_string: str,
    settings: HarnessSettings,
    pool: StripedConnectionPool | None,
    ephemeral: EphemeralDatabase | None,
    launcher: DatabaseLauncher | None,
) -> list[Exception]:
    errors: list[Exception] = []

    if migrations is not None:
        try:
            await _amigrate(connection_string, migrations, settings, up=False)
        except Exception as e:
            logger.exception("Down migrations failed; continuing cleanup")
            errors.append(e)

    if pool is not None:
        try:
            await adestroy_pool(pool)
        except Exception as e:
            logger.exception("Closing the connection pool failed; continuing cleanup")
            errors.append(e)

    try:
        await asyncio.to_thread(stop_ephemeral, ephemeral, launcher)
    except Exception as e:
        logger.exception("Stopping the ephemeral database failed")
        errors.append(e)

    return errors


async def asetup_db[F](
    migrations: Sequence[Migration],
    fixtures: Fixtures[F] | None = None,
    settings: HarnessSettings | None = None,
    launcher: DatabaseLauncher | None = None,
) -> GroupContext[F | None]:
    """Provision a database, migrate it, pool it and load fixtures.

    Parameters
    ----------
    migrations
        Ordered migrations applied before anything else touches the database.
    fixtures
        Async callable run once on a pooled connection (no implicit
        transaction). Its return value is shared by every test of the group.
    settings
        Harness settings. ``HarnessSettings()`` (read from the environment)
        when omitted.
    launcher
        Launcher for the ephemeral database; testcontainers by default.

    Raises
    ------
    ProvisioningError
        If no database could be launched.
    MigrationError
        If an up migration failed.

    Any failure after provisioning releases what was already created before
    the error propagates.
    """
    settings = settings or HarnessSettings()
    database = await asyncio.to_thread(resolve_connection, settings, launcher)
    print(database.connection_string, flush=True)

    pool: StripedConnectionPool | None = None
    try:
        await _amigrate(database.connection_string, migrations, settings, up=True)
        pool = await acreate_pool(database.connection_string, settings.pool)
        fixture = await arun_pooled(pool, fixtures) if fixtures is not None else None
    except BaseException:
        logger.exception("Test group setup failed; releasing resources", dsn=mask_dsn(database.connection_string))
        await _acleanup(migrations, database.connection_string, settings, pool, database.ephemeral, launcher)
        raise

    context = TestContext(
        pool=pool,
        connection_string=database.connection_string,
        ephemeral=database.ephemeral,
        launcher=launcher,
    )
    logger.info("Test group database ready", dsn=mask_dsn(database.connection_string), ephemeral=database.is_ephemeral)
    return GroupContext(context=context, fixture=fixture, settings=settings)


async def ateardown_db(
    migrations: Sequence[Migration],
    context: TestContext,
    settings: HarnessSettings | None = None,
) -> None:
    """Revert migrations, close the pool and stop the database setup launched.

    Raises
    ------
    TeardownError
        When ``settings.strict_teardown`` is on and any step failed. Raised
        only after every step has been attempted.
    """
    settings = settings or HarnessSettings()
    errors = await _acleanup(
        migrations,
        context.connection_string,
        settings,
        context.pool,
        context.ephemeral,
        context.launcher,
    )
    if not errors:
        logger.info("Test group database torn down")
        return
    if settings.strict_teardown:
        raise TeardownError(errors)
    logger.warning("Test group teardown finished with errors", errors=len(errors))
