"""Setup and teardown of a group database end to end."""

from __future__ import annotations

from typing import Any

import pytest

from pgharness import (
    HarnessSettings,
    Migration,
    TeardownError,
    adedicated_connection,
    arun_in_transaction,
    asetup_db,
    ateardown_db,
)

pytestmark = pytest.mark.integration


async def add_sku(conn: Any) -> None:
    await conn.execute("ALTER TABLE lifecycle_items ADD COLUMN sku text")
    await conn.execute("CREATE UNIQUE INDEX lifecycle_items_sku ON lifecycle_items (sku)")


MIGRATIONS = [
    Migration(
        name="create_lifecycle_items",
        up="CREATE TABLE lifecycle_items (id serial PRIMARY KEY, name text NOT NULL)",
        down="DROP TABLE lifecycle_items",
    ),
    Migration(
        name="add_lifecycle_sku",
        up=add_sku,
        down="DROP INDEX lifecycle_items_sku; ALTER TABLE lifecycle_items DROP COLUMN sku",
    ),
]


async def _relation_exists(dsn: str, name: str) -> bool:
    async with adedicated_connection(dsn) as conn:
        return await conn.fetchval("SELECT to_regclass($1) IS NOT NULL", name)


async def load_items(conn: Any) -> list[int]:
    rows = await conn.fetch(
        "INSERT INTO lifecycle_items (name, sku) VALUES ('bolt', 'B-1'), ('nut', 'N-1') RETURNING id"
    )
    return [row["id"] for row in rows]


class TestGroupLifecycle:
    async def test_setup_use_and_teardown(self, harness_settings: HarnessSettings, database_url: str) -> None:
        group = await asetup_db(MIGRATIONS, load_items, harness_settings)
        try:
            assert len(group.fixture) == 2

            async def count(conn: Any) -> int:
                return await conn.fetchval("SELECT count(*) FROM lifecycle_items")

            assert await group.context.arun(count) == 2
            applied = await group.context.arun(
                lambda conn: conn.fetch("SELECT name FROM schema_migrations ORDER BY executed_at, name")
            )
            assert {row["name"] for row in applied} == {"create_lifecycle_items", "add_lifecycle_sku"}
        finally:
            await ateardown_db(MIGRATIONS, group.context, harness_settings)

        assert group.context.pool.is_closed
        assert not await _relation_exists(database_url, "lifecycle_items")
        assert not await _relation_exists(database_url, "schema_migrations")

    async def test_rolled_back_writes_are_invisible(self, harness_settings: HarnessSettings) -> None:
        group = await asetup_db(MIGRATIONS, settings=harness_settings)
        try:

            async def insert(conn: Any) -> int:
                await conn.execute("INSERT INTO lifecycle_items (name) VALUES ('temp')")
                return await conn.fetchval("SELECT count(*) FROM lifecycle_items")

            assert await arun_in_transaction(group.context.pool, insert, rollback=True) == 1
            assert await group.context.arun(lambda conn: conn.fetchval("SELECT count(*) FROM lifecycle_items")) == 0
        finally:
            await ateardown_db(MIGRATIONS, group.context, harness_settings)

    async def test_failing_down_migration_still_closes_pool(
        self, harness_settings: HarnessSettings, database_url: str
    ) -> None:
        broken = [
            MIGRATIONS[0],
            Migration(
                name="broken_down",
                up="CREATE TABLE lifecycle_extra (id int)",
                down="DROP TABLE lifecycle_missing_table",
            ),
        ]
        group = await asetup_db(broken, settings=harness_settings)

        with pytest.raises(TeardownError, match="broken_down"):
            await ateardown_db(broken, group.context, harness_settings)

        assert group.context.pool.is_closed
        async with adedicated_connection(database_url) as conn:
            await conn.execute(
                """
                DROP TABLE lifecycle_extra;
                DROP TABLE lifecycle_items;
                DROP TABLE schema_migrations;
                """
            )
