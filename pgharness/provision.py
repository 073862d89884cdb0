"""Resolve the database a test group runs against.

Either the DSN comes from configuration (``TEST_DB_CONNECTION_STRING``), or a
disposable PostgreSQL container is started with testcontainers on a random
host port. Only a database launched here is ever stopped here.
"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote_plus, urlsplit, urlunsplit

from testcontainers.postgres import PostgresContainer  # type: ignore[import-untyped]

from .config import CONNECTION_STRING_ENV, EphemeralSettings, HarnessSettings
from .exceptions import ProvisioningError
from .logger import get_logger

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

logger: BoundLogger = get_logger(__name__)

POSTGRES_PORT = 5432


@dataclass(frozen=True, slots=True)
class EphemeralDatabase:
    """Handle for a database launched by a `DatabaseLauncher`."""

    connection_string: str
    log_path: Path
    container: PostgresContainer | None = None


@dataclass(frozen=True, slots=True)
class ProvisionedDatabase:
    connection_string: str
    ephemeral: EphemeralDatabase | None = None

    @property
    def is_ephemeral(self) -> bool:
        return self.ephemeral is not None


class DatabaseLauncher(Protocol):
    def start(self) -> EphemeralDatabase: ...
    def stop(self, database: EphemeralDatabase) -> None: ...


def mask_dsn(dsn: str) -> str:
    """Replace the password in a URL-style DSN with ``***`` for logging."""
    parts = urlsplit(dsn)
    if parts.password is None:
        return dsn
    netloc = parts.netloc.rsplit("@", 1)
    userinfo = netloc[0].split(":", 1)[0]
    return urlunsplit(parts._replace(netloc=f"{userinfo}:***@{netloc[1]}"))


class ContainerLauncher:
    """Start and stop PostgreSQL containers through testcontainers."""

    def __init__(self, settings: EphemeralSettings | None = None) -> None:
        self._settings = settings or EphemeralSettings()

    def _create_container(self) -> PostgresContainer:
        return PostgresContainer(
            self._settings.image,
            username=self._settings.username,
            password=self._settings.password.get_secret_value(),
            dbname=self._settings.dbname,
            driver=None,
        )

    def _dsn(self, container: PostgresContainer) -> str:
        user = quote_plus(self._settings.username)
        password = quote_plus(self._settings.password.get_secret_value())
        auth = f"{user}:{password}@" if password else f"{user}@"
        host = container.get_container_host_ip()
        port = container.get_exposed_port(POSTGRES_PORT)
        return f"postgresql://{auth}{host}:{port}/{self._settings.dbname}"

    def _write_startup_log(self, container: PostgresContainer) -> Path:
        log_dir = self._settings.log_dir
        if log_dir is not None:
            log_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="wb", prefix="pgharness-", suffix=".log", dir=log_dir, delete=False
        ) as fh:
            stdout, stderr = container.get_logs()
            fh.write(stdout)
            fh.write(stderr)
        return Path(fh.name)

    def _discard(self, container: PostgresContainer) -> None:
        try:
            container.stop()
        except Exception:
            logger.exception("Could not stop a container that failed to start", image=self._settings.image)

    def start(self) -> EphemeralDatabase:
        container = self._create_container()
        try:
            # start() also waits for readiness; the container may already be running when it fails
            container.start()
            connection_string = self._dsn(container)
            log_path = self._write_startup_log(container)
        except Exception:
            self._discard(container)
            raise
        logger.info(
            "Ephemeral PostgreSQL started",
            image=self._settings.image,
            dsn=mask_dsn(connection_string),
            log_path=str(log_path),
        )
        return EphemeralDatabase(connection_string=connection_string, log_path=log_path, container=container)

    def stop(self, database: EphemeralDatabase) -> None:
        if database.container is None:
            return
        database.container.stop()
        logger.info("Ephemeral PostgreSQL stopped", log_path=str(database.log_path))


def resolve_connection(settings: HarnessSettings, launcher: DatabaseLauncher | None = None) -> ProvisionedDatabase:
    """Return the DSN to test against, launching a database when none is configured.

    Parameters
    ----------
    settings
        Harness settings. A non-empty ``connection_string`` wins and is used verbatim.
    launcher
        Launcher for the ephemeral database. Defaults to `ContainerLauncher`.

    Raises
    ------
    ProvisioningError
        If the launcher cannot start a database. There is no retry.
    """
    if settings.connection_string is not None:
        logger.info(
            "Using externally supplied database",
            source=CONNECTION_STRING_ENV,
            dsn=mask_dsn(settings.connection_string),
        )
        return ProvisionedDatabase(connection_string=settings.connection_string)

    launcher = launcher or ContainerLauncher(settings.ephemeral)
    try:
        ephemeral = launcher.start()
    except ProvisioningError:
        raise
    except Exception as e:
        logger.error("Ephemeral PostgreSQL failed to start", image=settings.ephemeral.image, error=str(e))
        raise ProvisioningError(f"Could not start a PostgreSQL instance from {settings.ephemeral.image!r}: {e}") from e
    return ProvisionedDatabase(connection_string=ephemeral.connection_string, ephemeral=ephemeral)


def stop_ephemeral(ephemeral: EphemeralDatabase | None, launcher: DatabaseLauncher | None = None) -> None:
    """Stop the database if, and only if, `resolve_connection` launched one."""
    if ephemeral is None:
        return
    (launcher or ContainerLauncher()).stop(ephemeral)
