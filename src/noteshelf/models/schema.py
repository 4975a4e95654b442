"""Data models for the Noteshelf persistence core.

``Note`` and ``NoteImage`` are the domain records handed to callers.
``NoteRow`` and ``NoteImageRow`` are the typed column sets stored in
SQLite; ``to_row`` / ``from_row`` map between the two.
"""

import datetime
import uuid
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Callable, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from noteshelf.utils import content_preview

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=timezone.utc)

Clock = Callable[[], datetime.datetime]


def utc_now() -> datetime.datetime:
    """Get current UTC time as a timezone-aware datetime, in whole milliseconds.

    Stored timestamps have millisecond resolution, so anything compared
    against a stored value is truncated the same way.
    """
    return truncate_to_millis(datetime.datetime.now(timezone.utc))


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise unchanged.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def truncate_to_millis(dt_value: datetime.datetime) -> datetime.datetime:
    """Drop sub-millisecond precision from a datetime."""
    return dt_value.replace(microsecond=(dt_value.microsecond // 1000) * 1000)


def to_millis(dt_value: datetime.datetime) -> int:
    """Encode a datetime as integer milliseconds since the Unix epoch."""
    return (ensure_timezone_aware(dt_value) - EPOCH) // datetime.timedelta(milliseconds=1)


def from_millis(value: int) -> datetime.datetime:
    """Decode integer milliseconds since the Unix epoch into a UTC datetime."""
    return EPOCH + datetime.timedelta(milliseconds=int(value))


def parse_timestamp(
    value: Any, clock: Optional[Clock] = None
) -> datetime.datetime:
    """Parse a stored timestamp that may be an integer or text.

    Rows written by older code paths carry ISO-8601 text instead of epoch
    milliseconds. Text is tried as ISO-8601 first, then as integer
    milliseconds; anything unparseable becomes "now".

    Args:
        value: Integer milliseconds, ISO-8601 text, numeric text, or a datetime.
        clock: Source of "now" for the fallback. Defaults to utc_now.

    Returns:
        A timezone-aware UTC datetime truncated to milliseconds.
    """
    now = clock or utc_now
    if isinstance(value, datetime.datetime):
        return truncate_to_millis(ensure_timezone_aware(value).astimezone(timezone.utc))
    if isinstance(value, bool):
        return now()
    if isinstance(value, (int, float)):
        try:
            return from_millis(int(value))
        except (OverflowError, ValueError):
            return now()
    if isinstance(value, str):
        text = value.strip()
        try:
            parsed = datetime.datetime.fromisoformat(text)
            return truncate_to_millis(ensure_timezone_aware(parsed).astimezone(timezone.utc))
        except ValueError:
            pass
        try:
            return from_millis(int(text))
        except (OverflowError, ValueError):
            pass
    return now()


def generate_id() -> str:
    """Generate a fresh random identifier for a note or image."""
    return str(uuid.uuid4())


class Note(BaseModel):
    """A single note with rich-text content and metadata.

    Notes are immutable; use ``copy_with`` to derive a changed copy.
    Equality and hashing use the ``id`` only.
    """

    id: str = Field(..., description="Unique ID of the note")
    title: str = Field(default="", description="Title of the note, may be empty")
    content: str = Field(
        default="", description="Serialized rich-text payload; empty means no content"
    )
    category: Optional[str] = Field(default=None, description="Optional category label")
    image_paths: List[str] = Field(
        default_factory=list, description="Attached image files, in display order"
    )
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last changed (UTC)"
    )
    is_deleted: bool = Field(default=False, description="Soft-delete flag")

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate that the ID is not blank."""
        if not v or not v.strip():
            raise ValueError("Note ID cannot be empty")
        return v

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime.datetime) -> datetime.datetime:
        """Store timestamps as UTC with millisecond resolution."""
        return truncate_to_millis(ensure_timezone_aware(v).astimezone(timezone.utc))

    @model_validator(mode="after")
    def check_timestamps(self) -> "Note":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at cannot be earlier than created_at")
        return self

    @classmethod
    def create(
        cls,
        id: str,
        title: str = "",
        content: str = "",
        category: Optional[str] = None,
        image_paths: Optional[List[str]] = None,
        clock: Optional[Clock] = None,
    ) -> "Note":
        """Build a brand-new, active note with both timestamps set to now."""
        now = (clock or utc_now)()
        return cls(
            id=id,
            title=title,
            content=content,
            category=category,
            image_paths=list(image_paths or []),
            created_at=now,
            updated_at=now,
            is_deleted=False,
        )

    def copy_with(self, **changes: Any) -> "Note":
        """Return a validated copy with the given fields replaced."""
        return type(self).model_validate({**self.model_dump(), **changes})

    @property
    def content_preview(self) -> str:
        """Plain-text preview of the content (first 100 characters)."""
        return content_preview(self.content)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Note):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return (
            f"Note(id='{self.id}', title='{self.title}', "
            f"category={self.category!r}, is_deleted={self.is_deleted})"
        )


class NoteImage(BaseModel):
    """Association between a note and an image file."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the image record")
    note_id: str = Field(..., description="ID of the owning note")
    file_path: str = Field(..., description="Path of the image file")
    display_order: int = Field(default=0, description="Position among the note's images")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the image was attached (UTC)"
    )

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("created_at")
    @classmethod
    def normalize_timestamp(cls, v: datetime.datetime) -> datetime.datetime:
        return truncate_to_millis(ensure_timezone_aware(v).astimezone(timezone.utc))


@dataclass(frozen=True)
class NoteRow:
    """Column values of one ``notes`` row.

    Timestamps are epoch milliseconds and the delete flag is 0/1, exactly as
    stored. Image paths live in ``note_images`` and are not part of the row.
    """

    id: str
    title: str
    content: str
    category: Optional[str]
    created_at: int
    updated_at: int
    is_deleted: int


@dataclass(frozen=True)
class NoteImageRow:
    """Column values of one ``note_images`` row."""

    id: str
    note_id: str
    file_path: str
    display_order: int
    created_at: int


RowLike = Union[NoteRow, Mapping[str, Any]]


def to_row(note: Note) -> NoteRow:
    """Map a note to its persisted column set."""
    return NoteRow(
        id=note.id,
        title=note.title,
        content=note.content,
        category=note.category,
        created_at=to_millis(note.created_at),
        updated_at=to_millis(note.updated_at),
        is_deleted=1 if note.is_deleted else 0,
    )


def _row_value(row: RowLike, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name)


def from_row(
    row: RowLike,
    image_paths: Optional[List[str]] = None,
    clock: Optional[Clock] = None,
) -> Note:
    """Build a note from a stored row plus its separately loaded image paths.

    Accepts a ``NoteRow`` or any mapping keyed by column name. Timestamps may
    be integers or text (see ``parse_timestamp``); ``is_deleted`` is true only
    when it equals 1.
    """
    created_at = parse_timestamp(_row_value(row, "created_at"), clock)
    updated_at = parse_timestamp(_row_value(row, "updated_at"), clock)
    # A fallback "now" for a bad created_at must not break updated >= created
    if updated_at < created_at:
        updated_at = created_at
    return Note(
        id=_row_value(row, "id"),
        title=_row_value(row, "title") or "",
        content=_row_value(row, "content") or "",
        category=_row_value(row, "category"),
        image_paths=list(image_paths or []),
        created_at=created_at,
        updated_at=updated_at,
        is_deleted=_row_value(row, "is_deleted") == 1,
    )


def image_to_row(image: NoteImage) -> NoteImageRow:
    """Map an image association to its persisted column set."""
    return NoteImageRow(
        id=image.id,
        note_id=image.note_id,
        file_path=image.file_path,
        display_order=image.display_order,
        created_at=to_millis(image.created_at),
    )


def image_from_row(row: Union[NoteImageRow, Mapping[str, Any]]) -> NoteImage:
    """Build an image association from a stored row."""
    return NoteImage(
        id=_row_value(row, "id"),
        note_id=_row_value(row, "note_id"),
        file_path=_row_value(row, "file_path"),
        display_order=_row_value(row, "display_order") or 0,
        created_at=parse_timestamp(_row_value(row, "created_at")),
    )
