"""Schema lifecycle: first-run creation and ordered incremental upgrades.

The schema version lives in SQLite's ``PRAGMA user_version``. A database at
version 0 has never been set up and gets the full schema in one pass; a
database at a lower version than the code expects is walked forward through
``MIGRATIONS`` one step at a time. Each step runs in the same transaction as
the version bump, so a failed step leaves the database untouched.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from sqlalchemy import inspect
from sqlalchemy.engine import Connection, Engine

from noteshelf.exceptions import ErrorCode, MigrationError
from noteshelf.models.db_models import Base, get_schema_version, set_schema_version

logger = logging.getLogger(__name__)

# Current schema version. Bump together with a new entry in MIGRATIONS.
SCHEMA_VERSION = 1


@dataclass(frozen=True)
class Migration:
    """One additive upgrade step from ``from_version`` to ``from_version + 1``.

    Steps must tolerate already having been applied (see
    ``add_column_if_missing``).
    """

    from_version: int
    description: str
    step: Callable[[Connection], None]

    @property
    def to_version(self) -> int:
        return self.from_version + 1


# Baseline is version 1; no upgrade steps exist yet.
# Example:
#   Migration(1, "add pinned flag", lambda conn: add_column_if_missing(
#       conn, "notes", "pinned", "INTEGER NOT NULL DEFAULT 0")),
MIGRATIONS: List[Migration] = []


def add_column_if_missing(
    conn: Connection, table: str, column: str, ddl: str
) -> bool:
    """Add a column unless it already exists.

    SQLite doesn't support IF NOT EXISTS for ADD COLUMN, so we check
    the schema first. This is idempotent and safe to run multiple times.

    Args:
        conn: Connection inside the migration transaction.
        table: Table to alter.
        column: Column name.
        ddl: Column type and constraints, e.g. "INTEGER NOT NULL DEFAULT 0".

    Returns:
        True if the column was added, False if it was already present.
    """
    columns = [col["name"] for col in inspect(conn).get_columns(table)]
    if column in columns:
        return False
    conn.exec_driver_sql(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    return True


def on_create(conn: Connection, version: int) -> None:
    """Create both tables and all indexes, then stamp the version."""
    logger.info(f"Creating database schema v{version}")
    Base.metadata.create_all(conn)
    set_schema_version(conn, version)
    logger.info("Database schema created successfully")


def on_upgrade(
    conn: Connection,
    old_version: int,
    new_version: int,
    migrations: Sequence[Migration],
) -> int:
    """Apply every step between ``old_version`` and ``new_version`` in order.

    Returns:
        Number of steps applied.

    Raises:
        MigrationError: If a step fails. The caller's transaction is rolled
            back, so the stored version stays at ``old_version``.
    """
    logger.info(f"Upgrading database from v{old_version} to v{new_version}")

    pending = sorted(
        (m for m in migrations if old_version <= m.from_version < new_version),
        key=lambda m: m.from_version,
    )
    for migration in pending:
        logger.info(
            f"Applying migration v{migration.from_version} -> "
            f"v{migration.to_version}: {migration.description}"
        )
        try:
            migration.step(conn)
        except MigrationError:
            raise
        except Exception as e:
            raise MigrationError(
                f"Migration failed: {migration.description}",
                from_version=migration.from_version,
                to_version=migration.to_version,
                original_error=e,
            ) from e
        set_schema_version(conn, migration.to_version)

    # Versions without a step are pure version bumps
    set_schema_version(conn, new_version)
    return len(pending)


def initialize_schema(
    engine: Engine,
    target_version: int = SCHEMA_VERSION,
    migrations: Optional[Sequence[Migration]] = None,
) -> int:
    """Bring the database schema to ``target_version``.

    Args:
        engine: Engine created by ``create_db_engine``.
        target_version: Schema version the code expects.
        migrations: Upgrade steps. Defaults to MIGRATIONS.

    Returns:
        The version the database ended up at.

    Raises:
        MigrationError: If an upgrade step fails or the database was written
            by a newer schema than this code understands.
    """
    steps = MIGRATIONS if migrations is None else migrations
    with engine.begin() as conn:
        current = get_schema_version(conn)
        if current == 0:
            on_create(conn, target_version)
        elif current < target_version:
            on_upgrade(conn, current, target_version, steps)
        elif current > target_version:
            raise MigrationError(
                f"Database schema v{current} is newer than supported v{target_version}",
                from_version=current,
                to_version=target_version,
                code=ErrorCode.STORAGE_UNSUPPORTED_VERSION,
            )
    return target_version
