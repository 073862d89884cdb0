"""pytest plugin registered through the ``pytest11`` entry point.

Configures the ``pgharness`` logger for the session and points testcontainers at the local
Docker socket before any group fixture launches a database.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from .config import CONNECTION_STRING_ENV
from .logger import configure_logging


def _configure_docker_environment() -> None:
    if os.environ.get("DOCKER_HOST") or os.environ.get(CONNECTION_STRING_ENV):
        return

    possible_sockets = [
        Path("/var/run/docker.sock"),
        Path.home() / ".docker" / "run" / "docker.sock",
    ]
    for socket_path in possible_sockets:
        if socket_path.exists():
            os.environ["DOCKER_HOST"] = f"unix://{socket_path}"
            os.environ["TESTCONTAINERS_DOCKER_SOCKET_OVERRIDE"] = str(socket_path)
            break

    # Ryuk (testcontainers cleanup daemon) has known issues on macOS/Docker Desktop
    if sys.platform == "darwin" and not os.environ.get("TESTCONTAINERS_RYUK_DISABLED"):
        os.environ["TESTCONTAINERS_RYUK_DISABLED"] = "true"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "database: test runs against a pgharness-provisioned PostgreSQL database")
    configure_logging()
    _configure_docker_environment()
