"""Reversible schema migrations.

A migration list is applied in order going up and in reverse order going
down. Every step runs in its own transaction together with its row in the
bookkeeping table, so a step is either fully applied and recorded or not at
all. Steps already recorded are skipped going up; steps not recorded are
skipped going down. That keeps a long-lived external database (one supplied
through ``TEST_DB_CONNECTION_STRING``) from being migrated twice.

Examples
--------
>>> MIGRATIONS = [
...     Migration(name="create_users", up="CREATE TABLE users (id int)", down="DROP TABLE users"),
...     Migration(name="add_email", up=add_email_column, down="ALTER TABLE users DROP COLUMN email"),
... ]
>>> await amigrate_up(conn, MIGRATIONS)
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from .enums import MigrationDirection
from .exceptions import MigrationError
from .logger import get_logger

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

logger: BoundLogger = get_logger(__name__)

DEFAULT_MIGRATIONS_TABLE = "schema_migrations"
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

type MigrationAction = Callable[[Any], Awaitable[None]]


class Migration(BaseModel):
    """One reversible schema step.

    ``up`` and ``down`` are either SQL (several statements allowed) or an
    async callable receiving the asyncpg connection.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1, max_length=255, description="Unique name, recorded in the bookkeeping table")
    up: str | Callable[[Any], Awaitable[None]] = Field(description="Forward action")
    down: str | Callable[[Any], Awaitable[None]] = Field(description="Reverse action")

    def action(self, direction: MigrationDirection) -> str | MigrationAction:
        return self.up if direction is MigrationDirection.UP else self.down


def _check_unique_names(migrations: Sequence[Migration]) -> None:
    duplicates = sorted(name for name, count in Counter(m.name for m in migrations).items() if count > 1)
    if duplicates:
        raise MigrationError(f"Duplicate migration names: {', '.join(duplicates)}")


async def _run(conn: Any, action: str | MigrationAction) -> None:
    if isinstance(action, str):
        await conn.execute(action)
    else:
        await action(conn)


async def _ensure_table(conn: Any, table: str) -> None:
    await conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            name TEXT PRIMARY KEY,
            executed_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )


async def _is_applied(conn: Any, table: str, name: str) -> bool:
    return bool(await conn.fetchval(f"SELECT EXISTS (SELECT 1 FROM {table} WHERE name = $1)", name))


async def _apply_step(conn: Any, migration: Migration, direction: MigrationDirection, table: str) -> bool:
    async with conn.transaction():
        applied = await _is_applied(conn, table, migration.name)
        if applied == (direction is MigrationDirection.UP):
            return False

        await _run(conn, migration.action(direction))
        if direction is MigrationDirection.UP:
            await conn.execute(f"INSERT INTO {table} (name) VALUES ($1)", migration.name)
        else:
            await conn.execute(f"DELETE FROM {table} WHERE name = $1", migration.name)
    return True


async def _migrate(
    conn: Any,
    migrations: Sequence[Migration],
    direction: MigrationDirection,
    table: str,
) -> list[str]:
    if not _IDENTIFIER.match(table):
        raise MigrationError(f"Invalid migrations table name: {table!r}")
    _check_unique_names(migrations)
    await _ensure_table(conn, table)

    ordered = migrations if direction is MigrationDirection.UP else list(reversed(migrations))
    applied: list[str] = []
    for migration in ordered:
        try:
            changed = await _apply_step(conn, migration, direction, table)
        except Exception as e:
            logger.error("Migration step failed", migration=migration.name, direction=str(direction), error=str(e))
            raise MigrationError(
                f"Migration {migration.name!r} failed going {direction}: {e}",
                migration=migration.name,
                direction=str(direction),
            ) from e

        if changed:
            applied.append(migration.name)
            logger.debug("Migration step applied", migration=migration.name, direction=str(direction))
        else:
            logger.debug("Migration step skipped", migration=migration.name, direction=str(direction))

    logger.info("Migrations finished", direction=str(direction), applied=len(applied), total=len(migrations))
    return applied


async def amigrate_up(
    conn: Any,
    migrations: Sequence[Migration],
    *,
    table: str = DEFAULT_MIGRATIONS_TABLE,
) -> list[str]:
    """Apply pending migrations in list order.

    Parameters
    ----------
    conn
        A dedicated asyncpg connection (not one borrowed from the test pool).
    migrations
        Ordered migration list.
    table
        Bookkeeping table name. Must be a plain SQL identifier.

    Returns
    -------
    list[str]
        Names of the migrations applied by this call.

    Raises
    ------
    MigrationError
        On duplicate names or the first failing step. Steps before the
        failing one stay applied.
    """
    return await _migrate(conn, migrations, MigrationDirection.UP, table)


async def amigrate_down(
    conn: Any,
    migrations: Sequence[Migration],
    *,
    table: str = DEFAULT_MIGRATIONS_TABLE,
) -> list[str]:
    """Revert applied migrations in reverse list order.

    Drops the bookkeeping table once no recorded migration is left.
    """
    reverted = await _migrate(conn, migrations, MigrationDirection.DOWN, table)
    remaining = await conn.fetchval(f"SELECT count(*) FROM {table}")
    if remaining == 0:
        await conn.execute(f"DROP TABLE IF EXISTS {table}")
    return reverted
