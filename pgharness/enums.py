from enum import StrEnum


class TestTransactionMode(StrEnum):
    """What happens to a test's transaction once the test body returns."""

    __test__ = False

    ROLLBACK = "rollback"
    COMMIT = "commit"


class MigrationDirection(StrEnum):
    UP = "up"
    DOWN = "down"
