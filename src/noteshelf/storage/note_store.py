"""Note Store: the owner of the ``notes`` and ``note_images`` relations.

Every operation runs inside ``_operation``, which times it and turns any
SQLAlchemy / sqlite3 failure into a ``DatabaseConnectionError`` or a
``QueryError`` carrying the original error. Advisory operations
(``get_notes_count``, ``purge_deleted_notes``) degrade to 0 instead.
"""
import datetime
import logging
import sqlite3
import threading
from contextlib import contextmanager, nullcontext
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Union

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from noteshelf.config import config
from noteshelf.exceptions import (
    DatabaseConnectionError,
    MigrationError,
    NoteshelfError,
    QueryError,
    StorageError,
)
from noteshelf.models.db_models import (
    IN_MEMORY_URL,
    create_db_engine,
    get_schema_version,
    get_session_factory,
    note_images_table,
    notes_table,
)
from noteshelf.models.migrations import SCHEMA_VERSION, Migration, initialize_schema
from noteshelf.models.schema import (
    Clock,
    Note,
    NoteImage,
    from_row,
    generate_id,
    image_from_row,
    image_to_row,
    to_millis,
    to_row,
    utc_now,
)
from noteshelf.observability import timed_operation
from noteshelf.utils import escape_like_pattern

logger = logging.getLogger(__name__)

# SQLite's default host parameter limit is 999; stay well below it
_IN_CLAUSE_CHUNK = 500

_CONNECTION_FAILURE_MARKERS = (
    "unable to open database",
    "disk i/o error",
    "database disk image is malformed",
    "file is not a database",
)


class NoteStore:
    """Persistence for notes and their image associations.

    The store is constructed once and passed to every consumer. The engine
    is opened lazily on first use, the schema is created or upgraded at that
    point, and the engine is reused until ``close_database``; the next call
    after a close opens it again transparently.
    """

    def __init__(
        self,
        database_path: Optional[Union[str, Path]] = None,
        in_memory: Optional[bool] = None,
        migrations: Optional[Sequence[Migration]] = None,
        schema_version: int = SCHEMA_VERSION,
        clock: Optional[Clock] = None,
    ):
        """Initialize the store.

        Args:
            database_path: SQLite file to use. If None, uses
                config.database_path.
            in_memory: If True, use a private in-memory database. Defaults to
                config.in_memory_db unless a database_path is given.
            migrations: Upgrade steps. Defaults to the built-in list.
            schema_version: Schema version this store expects.
            clock: Source of "now" for timestamps. Defaults to utc_now.
        """
        if in_memory is None:
            in_memory = config.in_memory_db and database_path is None
        self.in_memory = in_memory
        self._db_path: Optional[Path] = None
        if not in_memory:
            self._db_path = (
                Path(database_path)
                if database_path
                else config.get_absolute_path(config.database_path)
            )

        self._migrations = migrations
        self._target_version = schema_version
        self._clock: Clock = clock or utc_now

        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._engine_lock = threading.Lock()
        # An in-memory database lives on a single shared connection, so
        # sessions from different threads must not overlap on it
        self._memory_lock = threading.RLock() if in_memory else None

        logger.info(
            f"NoteStore initialized: "
            f"db={':memory:' if self.in_memory else self._db_path}, "
            f"schema_version={schema_version}"
        )

    # ------------------------------------------------------------------
    # Engine lifecycle
    # ------------------------------------------------------------------

    @property
    def clock(self) -> Clock:
        """Source of "now" shared with collaborators such as the image store."""
        return self._clock

    def _db_url(self) -> str:
        if self._db_path is None:
            return IN_MEMORY_URL
        return config.get_db_url(self._db_path.resolve())

    def _connection_guard(self):
        if self._memory_lock is None:
            return nullcontext()
        return self._memory_lock

    def _get_engine(self) -> Engine:
        """Return the cached engine, opening it (and migrating) on first use.

        Raises:
            DatabaseConnectionError: If the database cannot be opened.
            MigrationError: If the schema cannot be brought up to date.
        """
        with self._engine_lock:
            if self._engine is not None:
                return self._engine

            engine: Optional[Engine] = None
            try:
                engine = create_db_engine(self._db_url())
                initialize_schema(engine, self._target_version, self._migrations)
            except MigrationError:
                logger.error("Database migration failed; store not opened")
                if engine is not None:
                    engine.dispose()
                raise
            except (SQLAlchemyError, sqlite3.Error, OSError) as e:
                if engine is not None:
                    engine.dispose()
                logger.error(f"Failed to open database: {e}")
                raise DatabaseConnectionError(
                    "Failed to open database",
                    path=str(self._db_path) if self._db_path else None,
                    original_error=e,
                ) from e

            self._engine = engine
            self._session_factory = get_session_factory(engine)
            logger.debug(f"Database opened at schema v{self._target_version}")
            return engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._engine_lock:
            factory = self._session_factory
        if factory is None:
            self._get_engine()
            factory = self._session_factory
        with self._connection_guard():
            with factory() as session:
                yield session

    def close_database(self) -> None:
        """Dispose of the engine. The next store call reopens it.

        Closing an in-memory store discards its data.
        """
        with self._connection_guard(), self._engine_lock:
            if self._engine is None:
                return
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
        logger.info("Database closed")

    def delete_database_file(self) -> bool:
        """Close the database, then remove its file and journal side files.

        Intended for reset and testing. Returns True if nothing is left on
        disk afterwards.
        """
        self.close_database()
        if self._db_path is None:
            return True
        try:
            for suffix in ("", "-wal", "-shm", "-journal"):
                Path(f"{self._db_path}{suffix}").unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to delete database file {self._db_path}: {e}")
            return False
        logger.info(f"Deleted database file {self._db_path}")
        return True

    def get_database_path(self) -> Optional[Path]:
        """Absolute path of the database file, or None when in memory."""
        return self._db_path.resolve() if self._db_path else None

    @property
    def schema_version(self) -> int:
        """Schema version recorded in the open database."""
        with self._operation("schema_version", "Failed to read schema version"):
            engine = self._get_engine()
            with self._connection_guard(), engine.connect() as conn:
                return get_schema_version(conn)

    # ------------------------------------------------------------------
    # Failure classification
    # ------------------------------------------------------------------

    def _classify(
        self,
        error: BaseException,
        operation: str,
        message: str,
        query: Optional[str],
    ) -> StorageError:
        """Map a low-level database error onto the storage error taxonomy."""
        invalidated = isinstance(error, DBAPIError) and error.connection_invalidated
        text = str(error).lower()
        if (
            invalidated
            or isinstance(error, DisconnectionError)
            or any(marker in text for marker in _CONNECTION_FAILURE_MARKERS)
        ):
            return DatabaseConnectionError(
                message,
                operation=operation,
                path=str(self._db_path) if self._db_path else None,
                original_error=error,
            )
        statement = query or getattr(error, "statement", None)
        return QueryError(
            message, operation=operation, query=statement, original_error=error
        )

    @contextmanager
    def _operation(
        self, operation: str, message: str, query: Optional[str] = None, **context
    ) -> Iterator[Dict]:
        """Time an operation and wrap any database failure."""
        with timed_operation(operation, **context) as op:
            try:
                yield op
            except NoteshelfError:
                raise
            except (SQLAlchemyError, sqlite3.Error) as e:
                error = self._classify(e, operation, message, query)
                logger.error(f"{message}: {e}")
                raise error from e

    # ------------------------------------------------------------------
    # Row loading helpers
    # ------------------------------------------------------------------

    def _load_image_paths(
        self, session: Session, note_ids: List[str]
    ) -> Dict[str, List[str]]:
        """Batch-load image paths for the given notes, in display order."""
        paths: Dict[str, List[str]] = {note_id: [] for note_id in note_ids}
        for start in range(0, len(note_ids), _IN_CLAUSE_CHUNK):
            chunk = note_ids[start:start + _IN_CLAUSE_CHUNK]
            stmt = (
                select(note_images_table.c.note_id, note_images_table.c.file_path)
                .where(note_images_table.c.note_id.in_(chunk))
                .order_by(
                    note_images_table.c.display_order.asc(),
                    note_images_table.c.created_at.asc(),
                )
            )
            for note_id, file_path in session.execute(stmt):
                paths[note_id].append(file_path)
        return paths

    def _fetch_notes(self, session: Session, stmt) -> List[Note]:
        rows = session.execute(stmt).mappings().all()
        paths = self._load_image_paths(session, [row["id"] for row in rows])
        return [from_row(row, paths[row["id"]], self._clock) for row in rows]

    @staticmethod
    def _active_notes_query():
        return (
            select(notes_table)
            .where(notes_table.c.is_deleted == 0)
            .order_by(notes_table.c.updated_at.desc())
        )

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def create_note(self, note: Note) -> Note:
        """Insert a note, overwriting any existing row with the same id.

        Existing image associations of an overwritten note are kept, so a
        retried create never loses attachments.

        Returns:
            The input note, unchanged.
        """
        values = asdict(to_row(note))
        stmt = sqlite_insert(notes_table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[notes_table.c.id],
            set_={k: stmt.excluded[k] for k in values if k != "id"},
        )
        with self._operation("create_note", "Failed to create note", note_id=note.id):
            with self._session() as session:
                session.execute(stmt)
                session.commit()
        logger.info(f"Created note {note.id}")
        return note

    def get_note_by_id(
        self, note_id: str, include_deleted: bool = False
    ) -> Optional[Note]:
        """Get a note with its image paths populated.

        Args:
            note_id: ID of the note.
            include_deleted: Also return a soft-deleted note.

        Returns:
            The note, or None if no matching row exists.
        """
        stmt = select(notes_table).where(notes_table.c.id == note_id)
        if not include_deleted:
            stmt = stmt.where(notes_table.c.is_deleted == 0)
        with self._operation("get_note_by_id", "Failed to load note", note_id=note_id) as op:
            with self._session() as session:
                notes = self._fetch_notes(session, stmt)
            op["found"] = bool(notes)
        return notes[0] if notes else None

    def fetch_all_notes(self) -> List[Note]:
        """All active notes, most recently updated first."""
        with self._operation("fetch_all_notes", "Failed to load notes") as op:
            with self._session() as session:
                notes = self._fetch_notes(session, self._active_notes_query())
            op["result_count"] = len(notes)
        return notes

    def update_note(self, note: Note) -> Note:
        """Overwrite the row matched by id, stamping ``updated_at`` to now.

        Image associations are not touched.

        Returns:
            The note as stored, with the new ``updated_at``.
        """
        stamped = note.copy_with(updated_at=max(self._clock(), note.created_at))
        values = asdict(to_row(stamped))
        values.pop("id")
        stmt = update(notes_table).where(notes_table.c.id == note.id).values(**values)
        with self._operation("update_note", "Failed to update note", note_id=note.id):
            with self._session() as session:
                matched = session.execute(stmt).rowcount
                session.commit()
        if matched == 0:
            logger.warning(f"update_note matched no row for note {note.id}")
        else:
            logger.info(f"Updated note {note.id}")
        return stamped

    def delete_note(self, note_id: str, hard_delete: bool = False) -> bool:
        """Delete a note.

        A soft delete sets ``is_deleted`` and refreshes ``updated_at``; the
        row and its image rows stay. A hard delete removes the row, and the
        foreign key cascade removes its image rows. Image files are left on
        disk for ``ImageStore.reconcile_orphans``.
        """
        if hard_delete:
            stmt = delete(notes_table).where(notes_table.c.id == note_id)
        else:
            stmt = (
                update(notes_table)
                .where(notes_table.c.id == note_id)
                .values(is_deleted=1, updated_at=to_millis(self._clock()))
            )
        with self._operation(
            "delete_note", "Failed to delete note", note_id=note_id, hard=hard_delete
        ):
            with self._session() as session:
                session.execute(stmt)
                session.commit()
        logger.info(f"{'Hard' if hard_delete else 'Soft'}-deleted note {note_id}")
        return True

    def restore_note(self, note_id: str) -> bool:
        """Undo a soft delete.

        Returns:
            True if a soft-deleted note was restored.
        """
        stmt = (
            update(notes_table)
            .where(notes_table.c.id == note_id, notes_table.c.is_deleted == 1)
            .values(is_deleted=0, updated_at=to_millis(self._clock()))
        )
        with self._operation("restore_note", "Failed to restore note", note_id=note_id):
            with self._session() as session:
                restored = session.execute(stmt).rowcount > 0
                session.commit()
        if restored:
            logger.info(f"Restored note {note_id}")
        return restored

    def search_notes(self, query: str) -> List[Note]:
        """Case-insensitive substring search over title and content.

        A blank query returns the same as ``fetch_all_notes``. Only active
        notes are returned, most recently updated first.
        """
        if not query or not query.strip():
            return self.fetch_all_notes()

        pattern = f"%{escape_like_pattern(query.lower())}%"
        stmt = self._active_notes_query().where(
            or_(
                func.unicode_lower(notes_table.c.title).like(pattern, escape="\\"),
                func.unicode_lower(notes_table.c.content).like(pattern, escape="\\"),
            )
        )
        with self._operation(
            "search_notes", "Failed to search notes", query=query
        ) as op:
            with self._session() as session:
                notes = self._fetch_notes(session, stmt)
            op["result_count"] = len(notes)
        return notes

    def get_notes_count(self) -> int:
        """Number of active notes, or 0 if the count cannot be read."""
        stmt = (
            select(func.count())
            .select_from(notes_table)
            .where(notes_table.c.is_deleted == 0)
        )
        try:
            with self._operation("get_notes_count", "Failed to count notes"):
                with self._session() as session:
                    return int(session.execute(stmt).scalar() or 0)
        except StorageError as e:
            logger.warning(f"Note count unavailable: {e}")
            return 0

    def purge_deleted_notes(self, retention_days: Optional[int] = None) -> int:
        """Hard-delete soft-deleted notes not touched within the retention window.

        A note is purged when ``updated_at <= now - retention_days``, so a
        retention of 0 purges every soft-deleted note.

        Args:
            retention_days: Window in days. If None, uses
                config.purge_retention_days.

        Returns:
            Number of notes removed, or 0 if the purge failed or the
            retention window is negative.
        """
        if retention_days is None:
            retention_days = config.purge_retention_days
        if retention_days < 0:
            logger.warning(f"Purge skipped: negative retention of {retention_days} days")
            return 0

        cutoff = to_millis(self._clock() - datetime.timedelta(days=retention_days))
        stmt = delete(notes_table).where(
            notes_table.c.is_deleted == 1, notes_table.c.updated_at <= cutoff
        )
        try:
            with self._operation(
                "purge_deleted_notes",
                "Failed to purge deleted notes",
                retention_days=retention_days,
            ) as op:
                with self._session() as session:
                    purged = session.execute(stmt).rowcount
                    session.commit()
                op["purged"] = purged
        except StorageError as e:
            logger.warning(f"Purge skipped: {e}")
            return 0
        if purged:
            logger.info(f"Purged {purged} deleted notes older than {retention_days} days")
        return purged

    # ------------------------------------------------------------------
    # Image associations
    # ------------------------------------------------------------------

    def add_image_to_note(
        self,
        image_id: str,
        note_id: str,
        file_path: str,
        display_order: int = 0,
    ) -> NoteImage:
        """Associate an image file with a note, overwriting by image id.

        Raises:
            QueryError: If the note does not exist (foreign key) or the
                insert fails.
        """
        image = NoteImage(
            id=image_id or generate_id(),
            note_id=note_id,
            file_path=file_path,
            display_order=display_order,
            created_at=self._clock(),
        )
        values = asdict(image_to_row(image))
        stmt = sqlite_insert(note_images_table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[note_images_table.c.id],
            set_={k: stmt.excluded[k] for k in values if k != "id"},
        )
        with self._operation(
            "add_image_to_note", "Failed to attach image", note_id=note_id
        ):
            with self._session() as session:
                session.execute(stmt)
                session.commit()
        logger.debug(f"Attached image {image.id} to note {note_id}")
        return image

    def remove_image_from_note(self, image_id: str) -> bool:
        """Remove one image association. Returns True if a row was removed."""
        stmt = delete(note_images_table).where(note_images_table.c.id == image_id)
        with self._operation(
            "remove_image_from_note", "Failed to detach image", image_id=image_id
        ):
            with self._session() as session:
                removed = session.execute(stmt).rowcount > 0
                session.commit()
        return removed

    def get_images_for_note(self, note_id: str) -> List[str]:
        """Image paths of a note, in display order."""
        with self._operation(
            "get_images_for_note", "Failed to load note images", note_id=note_id
        ):
            with self._session() as session:
                return self._load_image_paths(session, [note_id])[note_id]

    def get_all_image_records(self) -> List[NoteImage]:
        """Every image association, grouped by note and in display order.

        Raises rather than returning an empty list on failure; orphan cleanup
        relies on this to avoid treating every file as unreferenced.
        """
        stmt = select(note_images_table).order_by(
            note_images_table.c.note_id,
            note_images_table.c.display_order.asc(),
            note_images_table.c.created_at.asc(),
        )
        with self._operation(
            "get_all_image_records", "Failed to load image records"
        ) as op:
            with self._session() as session:
                records = [
                    image_from_row(row)
                    for row in session.execute(stmt).mappings().all()
                ]
            op["result_count"] = len(records)
        return records
