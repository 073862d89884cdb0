"""Shared fixtures for integration tests against a real PostgreSQL.

Tests marked ``integration`` run when ``TEST_DB_CONNECTION_STRING`` names a
database or a Docker daemon answers; otherwise they are skipped.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from docker import from_env  # type: ignore[import-untyped]
from docker.errors import DockerException  # type: ignore[import-untyped]

from pgharness import HarnessSettings, PoolSettings, StripedConnectionPool, resolve_connection, stop_ephemeral
from pgharness.config import CONNECTION_STRING_ENV

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator


def _is_docker_available() -> bool:
    """Check if Docker daemon is accessible.

    Returns
    -------
    bool
        True if Docker daemon responds to ping, False otherwise.
    """
    try:
        client = from_env()
        client.ping()
    except DockerException:
        return False
    else:
        return True


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:  # noqa: ARG001
    if os.environ.get(CONNECTION_STRING_ENV) or _is_docker_available():
        return

    skip = pytest.mark.skip(reason=f"Neither {CONNECTION_STRING_ENV} nor a Docker daemon is available")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(scope="session")
def database_url() -> Iterator[str]:
    """Provide one database for the session, provisioned the way groups are.

    Yields
    ------
    str
        The external DSN when configured, else the DSN of a fresh container.
    """
    database = resolve_connection(HarnessSettings())
    try:
        yield database.connection_string
    finally:
        stop_ephemeral(database.ephemeral)


@pytest.fixture
def harness_settings(database_url: str) -> HarnessSettings:
    return HarnessSettings(connection_string=database_url)


@pytest_asyncio.fixture
async def small_pool(database_url: str) -> AsyncIterator[StripedConnectionPool]:
    """Three connections over a single stripe."""
    async with StripedConnectionPool(database_url, PoolSettings(max_connections=3)) as pool:
        yield pool
