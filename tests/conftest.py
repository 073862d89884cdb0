"""Shared configuration for the pgharness test suite."""

from __future__ import annotations

import pytest

pytest_plugins = ["pytester"]


@pytest.fixture(autouse=True)
def _isolate_harness_env(monkeypatch: pytest.MonkeyPatch, request: pytest.FixtureRequest) -> None:
    """Keep unit tests independent of a developer's TEST_DB_* environment."""
    if request.node.get_closest_marker("integration") is None:
        for name in ("TEST_DB_CONNECTION_STRING", "TEST_DB_TEST_TRANSACTION", "TEST_DB_STRICT_TEARDOWN"):
            monkeypatch.delenv(name, raising=False)
