"""Tests for the note models and the row codec."""
import datetime
from datetime import timezone

import pytest
from pydantic import ValidationError

from noteshelf.models.schema import (
    Note,
    NoteImage,
    NoteRow,
    from_millis,
    from_row,
    image_from_row,
    image_to_row,
    parse_timestamp,
    to_millis,
    to_row,
)
from tests.fakes import FakeClock

T0 = datetime.datetime(2024, 1, 1, tzinfo=timezone.utc)
T0_MS = 1704067200000


class TestNoteModel:
    """Tests for the Note model."""

    def test_create_defaults(self):
        """A new note is active, empty and stamped once."""
        note = Note.create(id="n1", clock=FakeClock(start=T0))
        assert note.title == ""
        assert note.content == ""
        assert note.category is None
        assert note.image_paths == []
        assert note.is_deleted is False
        assert note.created_at == T0
        assert note.updated_at == T0

    def test_create_with_fields(self):
        note = Note.create(
            id="n1",
            title="Groceries",
            content="milk",
            category="home",
            image_paths=["/a.jpg", "/b.jpg"],
        )
        assert note.title == "Groceries"
        assert note.category == "home"
        assert note.image_paths == ["/a.jpg", "/b.jpg"]

    def test_blank_id_rejected(self):
        with pytest.raises(ValidationError):
            Note.create(id="")
        with pytest.raises(ValidationError):
            Note.create(id="   ")

    def test_updated_before_created_rejected(self):
        with pytest.raises(ValidationError):
            Note(
                id="n1",
                created_at=T0,
                updated_at=T0 - datetime.timedelta(milliseconds=1),
            )

    def test_notes_are_immutable(self):
        note = Note.create(id="n1", title="A")
        with pytest.raises(ValidationError):
            note.title = "B"

    def test_copy_with_replaces_and_validates(self):
        note = Note.create(id="n1", title="A", clock=FakeClock(start=T0))
        changed = note.copy_with(title="B")
        assert changed.title == "B"
        assert note.title == "A"
        with pytest.raises(ValidationError):
            note.copy_with(updated_at=T0 - datetime.timedelta(days=1))

    def test_equality_and_hash_use_id_only(self):
        """Two notes with the same id are equal whatever their fields."""
        a = Note.create(id="same", title="first")
        b = Note.create(id="same", title="second")
        c = Note.create(id="other", title="first")
        assert a == b
        assert hash(a) == hash(b)
        assert a != c
        assert len({a, b, c}) == 2

    def test_timestamps_normalized_to_utc_millis(self):
        naive = datetime.datetime(2024, 5, 6, 7, 8, 9, 123456)
        note = Note(id="n1", created_at=naive, updated_at=naive)
        assert note.created_at.tzinfo is not None
        assert note.created_at.microsecond == 123000

        offset = datetime.timezone(datetime.timedelta(hours=2))
        local = datetime.datetime(2024, 5, 6, 9, 0, tzinfo=offset)
        note = Note(id="n2", created_at=local, updated_at=local)
        assert note.created_at == datetime.datetime(2024, 5, 6, 7, 0, tzinfo=timezone.utc)

    def test_content_preview_property(self):
        note = Note.create(id="n1", content="line one\nline two")
        assert note.content_preview == "line one line two"


class TestTimestampCodec:
    """Tests for millisecond encoding and tolerant parsing."""

    def test_millis_round_trip(self):
        assert to_millis(T0) == T0_MS
        assert from_millis(T0_MS) == T0

    def test_pre_epoch_round_trip(self):
        before = datetime.datetime(1969, 12, 31, 23, 59, 59, 999000, tzinfo=timezone.utc)
        assert to_millis(before) == -1
        assert from_millis(-1) == before

    def test_parse_integer(self):
        assert parse_timestamp(T0_MS) == T0

    def test_parse_iso_text(self):
        parsed = parse_timestamp("2024-01-01T00:00:00.250+00:00")
        assert parsed == T0 + datetime.timedelta(milliseconds=250)

    def test_parse_naive_iso_text_as_utc(self):
        assert parse_timestamp("2024-01-01T00:00:00") == T0

    def test_parse_integer_text(self):
        assert parse_timestamp(str(T0_MS)) == T0

    def test_parse_garbage_falls_back_to_now(self):
        later = T0 + datetime.timedelta(days=3)
        assert parse_timestamp("not a date", clock=FakeClock(start=later)) == later
        assert parse_timestamp(None, clock=FakeClock(start=later)) == later


class TestRowCodec:
    """Tests for to_row / from_row."""

    def test_to_row_encoding(self):
        note = Note.create(id="n1", title="A", image_paths=["/x.jpg"], clock=FakeClock(start=T0))
        row = to_row(note.copy_with(is_deleted=True))
        assert row == NoteRow(
            id="n1",
            title="A",
            content="",
            category=None,
            created_at=T0_MS,
            updated_at=T0_MS,
            is_deleted=1,
        )

    def test_round_trip_field_for_field(self):
        note = Note(
            id="n1",
            title="Title",
            content='{"document": {}}',
            category="work",
            image_paths=["/a.jpg", "/b.jpg"],
            created_at=datetime.datetime(2023, 3, 4, 5, 6, 7, 891234, tzinfo=timezone.utc),
            updated_at=datetime.datetime(2024, 3, 4, 5, 6, 7, 891234, tzinfo=timezone.utc),
            is_deleted=True,
        )
        restored = from_row(to_row(note), note.image_paths)
        assert restored.model_dump() == note.model_dump()

    def test_from_mapping_with_text_timestamps(self):
        row = {
            "id": "n1",
            "title": "Legacy",
            "content": "",
            "category": None,
            "created_at": "2024-01-01T00:00:00+00:00",
            "updated_at": str(T0_MS + 5000),
            "is_deleted": 0,
        }
        note = from_row(row, ["/img.png"])
        assert note.created_at == T0
        assert note.updated_at == T0 + datetime.timedelta(seconds=5)
        assert note.image_paths == ["/img.png"]
        assert note.is_deleted is False

    def test_is_deleted_only_when_exactly_one(self):
        base = {
            "id": "n1", "title": "", "content": "", "category": None,
            "created_at": T0_MS, "updated_at": T0_MS,
        }
        assert from_row({**base, "is_deleted": 1}).is_deleted is True
        assert from_row({**base, "is_deleted": 0}).is_deleted is False
        assert from_row({**base, "is_deleted": 2}).is_deleted is False

    def test_unparseable_created_at_keeps_invariant(self):
        """A 'now' fallback for created_at never leaves updated_at behind it."""
        row = {
            "id": "n1", "title": "", "content": "", "category": None,
            "created_at": "garbage", "updated_at": 0, "is_deleted": 0,
        }
        note = from_row(row, clock=FakeClock(start=T0))
        assert note.created_at == T0
        assert note.updated_at >= note.created_at

    def test_null_text_columns_become_empty(self):
        row = {
            "id": "n1", "title": None, "content": None, "category": None,
            "created_at": T0_MS, "updated_at": T0_MS, "is_deleted": 0,
        }
        note = from_row(row)
        assert note.title == ""
        assert note.content == ""


class TestNoteImage:
    """Tests for the image association model."""

    def test_image_row_round_trip(self):
        image = NoteImage(
            id="img1", note_id="n1", file_path="/a.jpg", display_order=2, created_at=T0
        )
        row = image_to_row(image)
        assert row.created_at == T0_MS
        assert image_from_row(row) == image

    def test_image_gets_generated_id(self):
        a = NoteImage(note_id="n1", file_path="/a.jpg")
        b = NoteImage(note_id="n1", file_path="/a.jpg")
        assert a.id and b.id and a.id != b.id
