"""Configuration models for the test harness.

- `PoolSettings`: sizing of the striped connection pool
- `EphemeralSettings`: how the disposable PostgreSQL container is launched
- `HarnessSettings`: everything a test group needs, loaded from ``TEST_DB_*``
  environment variables

Only constructing `HarnessSettings()` reads the environment. Setup functions
take the settings object as an argument, so tests of the harness itself can
build one explicitly without touching ``os.environ``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .enums import TestTransactionMode

type IsolationLevel = Literal["read_uncommitted", "read_committed", "repeatable_read", "serializable"]

CONNECTION_STRING_ENV = "TEST_DB_CONNECTION_STRING"


class PoolSettings(BaseModel):
    """Connection pool settings.

    ``max_connections`` is the total capacity across all stripes.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    stripes: int = Field(default=1, ge=1, le=64, description="Number of independent sub-pools")
    idle_lifetime: float = Field(
        default=3600.0, ge=0.0, description="Seconds an idle connection is kept before it is closed (0 disables)"
    )
    max_connections: int = Field(default=50, ge=1, le=1000, description="Maximum live connections in total")

    @model_validator(mode="after")
    def _check_capacity(self) -> Self:
        if self.max_connections < self.stripes:
            raise ValueError(
                f"max_connections ({self.max_connections}) must be at least the number of stripes ({self.stripes})"
            )
        return self

    def stripe_capacities(self) -> list[int]:
        """Split ``max_connections`` across stripes; the sizes sum to the total."""
        base, extra = divmod(self.max_connections, self.stripes)
        return [base + 1 if i < extra else base for i in range(self.stripes)]


class EphemeralSettings(BaseModel):
    """Settings for the disposable PostgreSQL container."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    image: str = Field(default="postgres:16-alpine", min_length=1)
    username: str = Field(default="test", min_length=1)
    password: SecretStr = Field(default=SecretStr("test"))
    dbname: str = Field(default="test", min_length=1)
    log_dir: Path | None = Field(default=None, description="Where startup logs go (system temp dir when unset)")


class HarnessSettings(BaseSettings):
    """Settings for one group of database tests.

    Examples
    --------
    >>> HarnessSettings()  # reads TEST_DB_CONNECTION_STRING, TEST_DB_POOL__MAX_CONNECTIONS, ...
    >>> HarnessSettings(connection_string="postgresql://me@localhost:5432/scratch")
    """

    model_config = SettingsConfigDict(
        env_prefix="TEST_DB_",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    connection_string: str | None = Field(
        default=None,
        description="DSN of an already running database; when set no container is launched",
    )
    pool: PoolSettings = Field(default_factory=PoolSettings)
    ephemeral: EphemeralSettings = Field(default_factory=EphemeralSettings)
    migrations_table: str = Field(
        default="schema_migrations",
        pattern=r"^[A-Za-z_][A-Za-z0-9_]{0,62}$",
        description="Bookkeeping table recording applied migrations",
    )
    test_transaction: TestTransactionMode = Field(default=TestTransactionMode.ROLLBACK)
    isolation: IsolationLevel = Field(default="read_committed")
    strict_teardown: bool = Field(
        default=True,
        description="Raise TeardownError after cleanup when any teardown step failed",
    )

    @field_validator("connection_string", mode="before")
    @classmethod
    def _blank_means_unset(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def uses_external_database(self) -> bool:
        return self.connection_string is not None
