"""SQLAlchemy database models for the Noteshelf persistence core.

The on-disk layout is a compatibility contract with existing data: table
and column names, INTEGER epoch-millisecond timestamps, the 0/1 delete
flag and the cascading foreign key must stay as they are.
"""
from typing import Optional

from sqlalchemy import Column, ForeignKey, Index, Integer, Text, create_engine, event, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(Text, primary_key=True)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False, server_default="")
    category = Column(Text, nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)
    is_deleted = Column(Integer, nullable=False, server_default=text("0"))

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}', is_deleted={self.is_deleted})>"


class DBNoteImage(Base):
    """Database model for an image attached to a note."""
    __tablename__ = "note_images"
    id = Column(Text, primary_key=True)
    note_id = Column(
        Text, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False
    )
    file_path = Column(Text, nullable=False)
    display_order = Column(Integer, nullable=False, server_default=text("0"))
    created_at = Column(Integer, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of image record."""
        return (
            f"<NoteImage(id='{self.id}', note_id='{self.note_id}', "
            f"order={self.display_order})>"
        )


notes_table = DBNote.__table__
note_images_table = DBNoteImage.__table__

# "Recent first" listing and "active only" filtering are the hot paths
Index("idx_notes_updated_at", notes_table.c.updated_at.desc())
Index("idx_notes_is_deleted", notes_table.c.is_deleted)
Index("idx_notes_created_at", notes_table.c.created_at.desc())
Index("idx_note_images_note_id", note_images_table.c.note_id)

IN_MEMORY_URL = "sqlite://"


def _unicode_lower(value: Optional[str]) -> Optional[str]:
    # SQLite's built-in lower() only folds ASCII
    return value.lower() if isinstance(value, str) else value


def create_db_engine(db_url: str) -> Engine:
    """Create an engine with the connection settings every store relies on.

    - Foreign keys ON, so hard-deleting a note removes its image rows
    - WAL journal and NORMAL synchronous mode for file databases
    - ``unicode_lower()`` SQL function for case-insensitive search
    - Explicit BEGIN so DDL and PRAGMA user_version take part in
      transactions (a failed migration rolls back completely)
    - A single shared connection for in-memory databases, a small
      pre-pinged pool for files
    """
    in_memory = db_url in (IN_MEMORY_URL, "sqlite:///:memory:")
    if in_memory:
        engine = create_engine(
            db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            db_url,
            poolclass=QueuePool,
            pool_size=2,
            max_overflow=3,
            pool_timeout=30,
            pool_pre_ping=True,  # Validate connections before use
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Let SQLAlchemy's "begin" hook own transaction boundaries
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()
        dbapi_connection.create_function(
            "unicode_lower", 1, _unicode_lower, deterministic=True
        )

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Get a session factory for the database."""
    return sessionmaker(bind=engine)


def get_schema_version(conn: Connection) -> int:
    """Read the schema version stored in the database header."""
    return int(conn.exec_driver_sql("PRAGMA user_version").scalar() or 0)


def set_schema_version(conn: Connection, version: int) -> None:
    """Write the schema version into the database header."""
    conn.exec_driver_sql(f"PRAGMA user_version = {int(version)}")
