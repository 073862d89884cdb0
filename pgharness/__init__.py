"""PostgreSQL test harness for pytest.

Each group of tests gets one database: an ephemeral PostgreSQL container
(or the database named by ``TEST_DB_CONNECTION_STRING``), migrated up before
the first test and down after the last. Every test runs in its own
transaction on a pooled asyncpg connection and is rolled back afterwards.

Usage
-----
::

    from pgharness import Migration, describe_db

    MIGRATIONS = [Migration(name="t", up="CREATE TABLE t (id int)", down="DROP TABLE t")]

    group = describe_db(MIGRATIONS, name="t")
    t_database = group.fixture()

    @group.it
    async def test_insert(conn):
        await conn.execute("INSERT INTO t VALUES (1)")
        assert await conn.fetchval("SELECT count(*) FROM t") == 1
"""

from .config import CONNECTION_STRING_ENV, EphemeralSettings, HarnessSettings, IsolationLevel, PoolSettings
from .enums import MigrationDirection, TestTransactionMode
from .exceptions import HarnessError, MigrationError, PoolNotInitializedError, ProvisioningError, TeardownError
from .group import DatabaseGroup, describe_db, describe_fixtures
from .lifecycle import GroupContext, adedicated_connection, asetup_db, ateardown_db
from .migrations import Migration, amigrate_down, amigrate_up
from .pool import StripedConnectionPool, acreate_pool, adestroy_pool
from .provision import (
    ContainerLauncher,
    DatabaseLauncher,
    EphemeralDatabase,
    ProvisionedDatabase,
    resolve_connection,
    stop_ephemeral,
)
from .transaction import TestContext, arun_in_transaction, arun_pooled, awith_fixture, awithout_fixture

__all__ = [
    "CONNECTION_STRING_ENV",
    "ContainerLauncher",
    "DatabaseGroup",
    "DatabaseLauncher",
    "EphemeralDatabase",
    "EphemeralSettings",
    "GroupContext",
    "HarnessError",
    "HarnessSettings",
    "IsolationLevel",
    "Migration",
    "MigrationDirection",
    "MigrationError",
    "PoolNotInitializedError",
    "PoolSettings",
    "ProvisionedDatabase",
    "ProvisioningError",
    "StripedConnectionPool",
    "TeardownError",
    "TestContext",
    "TestTransactionMode",
    "acreate_pool",
    "adedicated_connection",
    "adestroy_pool",
    "amigrate_down",
    "amigrate_up",
    "arun_in_transaction",
    "arun_pooled",
    "asetup_db",
    "ateardown_db",
    "awith_fixture",
    "awithout_fixture",
    "describe_db",
    "describe_fixtures",
    "resolve_connection",
    "stop_ephemeral",
]
