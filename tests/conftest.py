"""Common test fixtures for the Noteshelf persistence core."""

import tempfile
from pathlib import Path

import pytest

from noteshelf.config import config
from noteshelf.observability import metrics
from noteshelf.services.notes_service import NotesService
from noteshelf.storage.image_store import ImageStore
from noteshelf.storage.note_store import NoteStore
from tests.fakes import FakeClock


@pytest.fixture
def temp_dirs():
    """Create temporary directories for images and database."""
    with tempfile.TemporaryDirectory() as images_dir:
        with tempfile.TemporaryDirectory() as db_dir:
            yield Path(images_dir), Path(db_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    images_dir, db_dir = temp_dirs
    monkeypatch.setattr(config, "images_dir", images_dir)
    monkeypatch.setattr(config, "database_path", db_dir / "test_notes.db")
    monkeypatch.setattr(config, "in_memory_db", False)
    yield config


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Keep the global metrics collector from leaking between tests."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    """A clock that moves one second forward per call."""
    return FakeClock()


@pytest.fixture
def note_store(clock):
    """Create a fresh in-memory note store."""
    store = NoteStore(in_memory=True, clock=clock)
    yield store
    store.close_database()


@pytest.fixture
def file_note_store(test_config, clock):
    """Create a note store backed by a temporary database file."""
    store = NoteStore(
        database_path=test_config.database_path, in_memory=False, clock=clock
    )
    yield store
    store.close_database()


@pytest.fixture
def image_store(note_store, tmp_path):
    """Create an image store over a temporary managed directory."""
    yield ImageStore(note_store, images_dir=tmp_path / "note_images")


@pytest.fixture
def notes_service(note_store, clock):
    """Create a notes service over the in-memory store."""
    yield NotesService(note_store, clock=clock)
