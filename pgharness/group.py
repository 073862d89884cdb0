"""pytest integration: one database per group of tests.

A group is declared once per test module (or class) and contributes two
things to it: a group fixture that sets the database up before the first
test and tears it down after the last, and the `DatabaseGroup.it`
decorator that turns ``async def`` bodies into tests running in their own
transaction.

Usage
-----
::

    from pgharness import Migration, describe_fixtures

    MIGRATIONS = [Migration(name="users", up="CREATE TABLE users (id int)", down="DROP TABLE users")]

    async def load_users(conn):
        await conn.execute("INSERT INTO users VALUES (1), (2)")
        return [1, 2]

    users = describe_fixtures(MIGRATIONS, load_users, name="users")
    users_database = users.fixture()

    @users.it
    async def test_counts_users(conn):
        assert await conn.fetchval("SELECT count(*) FROM users") == 2

    @users.it(with_fixture=True)
    async def test_sees_fixture(conn, ids):
        assert ids == [1, 2]
"""

from __future__ import annotations

import functools
import inspect
import re
from collections.abc import Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Literal, overload

import pytest
import pytest_asyncio

from .config import HarnessSettings
from .enums import TestTransactionMode
from .lifecycle import GroupContext, asetup_db, ateardown_db
from .logger import bind_context, get_logger, unbind_context
from .transaction import awith_fixture, awithout_fixture

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from structlog.stdlib import BoundLogger

    from .config import IsolationLevel
    from .lifecycle import Fixtures
    from .migrations import Migration
    from .provision import DatabaseLauncher

logger: BoundLogger = get_logger(__name__)

type GroupScope = Literal["module", "class", "package", "session"]
type TestBody = Callable[..., Awaitable[Any]]


def _fixture_name(name: str) -> str:
    slug = re.sub(r"\W+", "_", name).strip("_").lower() or "group"
    return f"{slug}_database"


class DatabaseGroup[F]:
    """A group of tests sharing one migrated database and one fixture value.

    Parameters
    ----------
    migrations
        Ordered migrations applied at group setup and reverted at teardown.
    fixtures
        Async callable ``(conn) -> F`` run once after the pool exists.
    name
        Group name; the group fixture is called ``<name>_database``.
    settings
        Harness settings. Read from the environment at setup time when omitted.
    launcher
        Launcher for the ephemeral database (testcontainers by default).
    scope
        pytest scope of the group fixture and event loop of its tests.
    """

    def __init__(
        self,
        migrations: Sequence[Migration],
        fixtures: Fixtures[F] | None = None,
        *,
        name: str,
        settings: HarnessSettings | None = None,
        launcher: DatabaseLauncher | None = None,
        scope: GroupScope = "module",
    ) -> None:
        self.migrations = list(migrations)
        self.fixtures = fixtures
        self.name = name
        self.fixture_name = _fixture_name(name)
        self.scope = scope
        self._settings = settings
        self._launcher = launcher

    def __repr__(self) -> str:
        return f"DatabaseGroup(name={self.name!r}, migrations={len(self.migrations)}, scope={self.scope!r})"

    def resolve_settings(self) -> HarnessSettings:
        return self._settings if self._settings is not None else HarnessSettings()

    async def asetup(self, settings: HarnessSettings) -> GroupContext[F | None]:
        return await asetup_db(self.migrations, self.fixtures, settings, self._launcher)

    async def ateardown(self, group: GroupContext[Any], settings: HarnessSettings) -> None:
        await ateardown_db(self.migrations, group.context, settings)

    @asynccontextmanager
    async def alifespan(self) -> AsyncIterator[GroupContext[F | None]]:
        """Set the group up on entry and tear it down on exit, exactly once each."""
        settings = self.resolve_settings()
        bind_context(test_group=self.name)
        logger.debug("Test group starting", migrations=len(self.migrations), scope=self.scope)
        try:
            group = await self.asetup(settings)
            try:
                yield group
            finally:
                await self.ateardown(group, settings)
        finally:
            unbind_context("test_group")

    def fixture(self) -> Any:
        """Return the group fixture; assign it to a module (or class) attribute.

        The fixture name is ``self.fixture_name`` whatever the attribute is called.
        """

        async def group_database() -> AsyncIterator[GroupContext[F | None]]:
            async with self.alifespan() as group:
                yield group

        group_database.__doc__ = f"Database for the {self.name!r} test group."
        return pytest_asyncio.fixture(group_database, scope=self.scope, loop_scope=self.scope, name=self.fixture_name)

    async def arun_test(
        self,
        group: GroupContext[Any],
        body: TestBody,
        *,
        with_fixture: bool = False,
        isolation: IsolationLevel | None = None,
        settings: HarnessSettings | None = None,
    ) -> None:
        """Run one test body in a transaction and drop its return value.

        Uses the settings the group was set up with, so every test agrees
        with setup even if the environment changed in between.
        """
        settings = settings or group.settings or self.resolve_settings()
        rollback = settings.test_transaction is TestTransactionMode.ROLLBACK
        isolation = isolation or settings.isolation
        if with_fixture:
            await awith_fixture(body, group, isolation=isolation, rollback=rollback)
        else:
            await awithout_fixture(body, group, isolation=isolation, rollback=rollback)

    @overload
    def it(self, body: TestBody, /) -> Callable[..., Awaitable[None]]: ...

    @overload
    def it(
        self,
        body: None = None,
        /,
        *,
        with_fixture: bool = False,
        isolation: IsolationLevel | None = None,
    ) -> Callable[[TestBody], Callable[..., Awaitable[None]]]: ...

    def it(
        self,
        body: TestBody | None = None,
        /,
        *,
        with_fixture: bool = False,
        isolation: IsolationLevel | None = None,
    ) -> Any:
        """Register ``body`` as a test of this group.

        ``body`` is ``async def (conn)`` or, with ``with_fixture=True``,
        ``async def (conn, fixture)``. It runs in a transaction on a pooled
        connection; the transaction is rolled back afterwards unless the
        settings ask for ``test_transaction="commit"``. A failing body is
        reported by pytest as usual, after the rollback. Bodies defined in a
        test class take ``self`` first, like any other test method.
        """

        def decorate(body: TestBody) -> Callable[..., Awaitable[None]]:
            fixture_name = self.fixture_name
            in_class = "." in body.__qualname__.rsplit("<locals>.", 1)[-1]

            async def test(*instance: Any, **fixtures: Any) -> None:
                await self.arun_test(
                    fixtures[fixture_name],
                    functools.partial(body, *instance),
                    with_fixture=with_fixture,
                    isolation=isolation,
                )

            test.__name__ = body.__name__
            test.__qualname__ = body.__qualname__
            test.__module__ = body.__module__
            test.__doc__ = body.__doc__
            # pytest resolves fixtures from the signature; request only the group fixture
            parameters = [inspect.Parameter(fixture_name, inspect.Parameter.KEYWORD_ONLY)]
            if in_class:
                parameters.insert(0, inspect.Parameter("self", inspect.Parameter.POSITIONAL_OR_KEYWORD))
            test.__signature__ = inspect.Signature(parameters)  # type: ignore[attr-defined]
            return pytest.mark.database(pytest.mark.asyncio(loop_scope=self.scope)(test))

        if body is not None:
            return decorate(body)
        return decorate


def describe_db(
    migrations: Sequence[Migration],
    fixtures: Fixtures[Any] | None = None,
    *,
    name: str,
    settings: HarnessSettings | None = None,
    launcher: DatabaseLauncher | None = None,
    scope: GroupScope = "module",
) -> DatabaseGroup[None]:
    """Declare a group whose fixture loader produces nothing for the tests.

    ``fixtures`` may still populate the database; its return value is
    discarded and tests asking for the fixture receive ``None``.
    """
    if fixtures is None:
        return DatabaseGroup(migrations, None, name=name, settings=settings, launcher=launcher, scope=scope)

    load = fixtures

    async def discard_result(conn: Any) -> None:
        await load(conn)

    return DatabaseGroup(migrations, discard_result, name=name, settings=settings, launcher=launcher, scope=scope)


def describe_fixtures[F](
    migrations: Sequence[Migration],
    fixtures: Fixtures[F],
    *,
    name: str,
    settings: HarnessSettings | None = None,
    launcher: DatabaseLauncher | None = None,
    scope: GroupScope = "module",
) -> DatabaseGroup[F]:
    """Declare a group whose fixture value is shared by every test in it."""
    return DatabaseGroup(migrations, fixtures, name=name, settings=settings, launcher=launcher, scope=scope)
