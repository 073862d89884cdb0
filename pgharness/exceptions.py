from __future__ import annotations

from collections.abc import Sequence


class HarnessError(Exception):
    """Base class for every error raised by pgharness."""


class ProvisioningError(HarnessError):
    """The ephemeral database could not be launched."""


class MigrationError(HarnessError):
    """A migration step failed, or the migration list is invalid."""

    def __init__(self, message: str, *, migration: str | None = None, direction: str | None = None) -> None:
        super().__init__(message)
        self.migration = migration
        self.direction = direction


class PoolNotInitializedError(HarnessError):
    """The pool was used before `ainitialize()` or after `aclose()`."""


class TeardownError(HarnessError):
    """One or more cleanup steps failed.

    Raised only after the whole cleanup chain has run, so a failing down
    migration never leaves the pool or the database process behind.
    """

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = tuple(errors)
        summary = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"Teardown finished with {len(self.errors)} error(s): {summary}")
