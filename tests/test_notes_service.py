"""Tests for the NotesService read model."""
import datetime
import json
from unittest.mock import patch

import pytest

from noteshelf.exceptions import DatabaseConnectionError, QueryError
from noteshelf.models.schema import Note
from noteshelf.services.notes_service import (
    CREATE_FAILED,
    DELETE_FAILED,
    LOAD_FAILED,
    SAVE_FAILED,
    UNEXPECTED_ERROR,
    NotesService,
    NotesState,
)

T0 = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)


def _query_error():
    return QueryError("Failed", operation="test", query="SELECT 1")


class TestNotesState:
    """Tests for the derived views."""

    def _note(self, note_id, minutes, **fields):
        at = T0 + datetime.timedelta(minutes=minutes)
        return Note(id=note_id, created_at=at, updated_at=at, **fields)

    def test_filtered_without_query_is_everything(self):
        notes = (self._note("a", 1), self._note("b", 2))
        assert NotesState(notes=notes).filtered_notes == list(notes)

    def test_filter_matches_title_preview_and_category(self):
        doc = json.dumps({"document": {"children": [{"delta": [{"insert": "Buy MILK"}]}]}})
        notes = (
            self._note("title", 1, title="Milk run"),
            self._note("body", 2, content=doc),
            self._note("cat", 3, category="milky way"),
            self._note("none", 4, title="Other"),
        )
        state = NotesState(notes=notes, search_query="mIlK")
        assert [n.id for n in state.filtered_notes] == ["title", "body", "cat"]

    def test_sorted_most_recent_first(self):
        notes = (self._note("old", 1), self._note("new", 3), self._note("mid", 2))
        assert [n.id for n in NotesState(notes=notes).sorted_notes] == ["new", "mid", "old"]

    def test_sort_is_stable_on_ties(self):
        notes = (self._note("x", 1), self._note("y", 1), self._note("z", 1))
        assert [n.id for n in NotesState(notes=notes).sorted_notes] == ["x", "y", "z"]


class TestLoad:
    """Tests for load / refresh."""

    def test_load_replaces_notes(self, notes_service, note_store, clock):
        note_store.create_note(Note.create(id="a", clock=clock))
        note_store.create_note(Note.create(id="b", clock=clock))
        notes_service.load()
        state = notes_service.state
        assert [n.id for n in state.notes] == ["b", "a"]
        assert state.is_loading is False
        assert state.error_message is None

    def test_load_failure_sets_generic_message(self, notes_service):
        with patch.object(notes_service.store, "fetch_all_notes", side_effect=_query_error()):
            notes_service.load()
        state = notes_service.state
        assert state.error_message == LOAD_FAILED
        assert state.is_loading is False
        assert "SELECT" not in state.error_message

    def test_connection_failure_is_retryable(self, notes_service):
        error = DatabaseConnectionError("Failed to open database")
        with patch.object(notes_service.store, "fetch_all_notes", side_effect=error):
            notes_service.refresh()
        assert notes_service.state.error_message == LOAD_FAILED
        notes_service.refresh()
        assert notes_service.state.error_message is None

    def test_unexpected_failure_message(self, notes_service):
        with patch.object(notes_service.store, "fetch_all_notes", side_effect=KeyError("x")):
            notes_service.load()
        assert notes_service.state.error_message == UNEXPECTED_ERROR

    def test_loading_flag_visible_to_listeners(self, notes_service):
        seen = []
        notes_service.subscribe(lambda state: seen.append(state.is_loading))
        notes_service.load()
        assert seen[0] is True
        assert seen[-1] is False


class TestMutations:
    """Tests for create / update / delete."""

    def test_create_prepends_and_persists(self, notes_service, note_store):
        first = notes_service.create_note(title="first")
        second = notes_service.create_note(title="second", content="body", category="c")
        assert [n.id for n in notes_service.state.notes] == [second.id, first.id]
        assert note_store.get_note_by_id(second.id).category == "c"
        assert first.id != second.id

    def test_create_failure_returns_none(self, notes_service):
        with patch.object(notes_service.store, "create_note", side_effect=_query_error()):
            assert notes_service.create_note(title="lost") is None
        assert notes_service.state.error_message == CREATE_FAILED
        assert notes_service.state.notes == ()

    def test_new_operation_clears_previous_error(self, notes_service):
        with patch.object(notes_service.store, "create_note", side_effect=_query_error()):
            notes_service.create_note()
        assert notes_service.create_note(title="ok") is not None
        assert notes_service.state.error_message is None

    def test_update_replaces_entry(self, notes_service, note_store):
        note = notes_service.create_note(title="A")
        other = notes_service.create_note(title="other")
        assert notes_service.update_note(note.copy_with(title="B")) is True
        local = notes_service.get_note_by_id(note.id)
        assert local.title == "B"
        assert local.updated_at > note.updated_at
        assert note_store.get_note_by_id(note.id).title == "B"
        assert [n.id for n in notes_service.state.sorted_notes] == [note.id, other.id]

    def test_update_failure_keeps_previous_version(self, notes_service):
        note = notes_service.create_note(title="A")
        with patch.object(notes_service.store, "update_note", side_effect=_query_error()):
            assert notes_service.update_note(note.copy_with(title="B")) is False
        assert notes_service.state.error_message == SAVE_FAILED
        assert notes_service.get_note_by_id(note.id).title == "A"

    @pytest.mark.parametrize("hard", [False, True])
    def test_delete_removes_from_list(self, notes_service, note_store, hard):
        note = notes_service.create_note(title="A")
        assert notes_service.delete_note(note.id, hard_delete=hard) is True
        assert notes_service.get_note_by_id(note.id) is None
        found = note_store.get_note_by_id(note.id, include_deleted=True)
        assert (found is None) is hard

    def test_delete_failure_keeps_note(self, notes_service):
        note = notes_service.create_note(title="A")
        with patch.object(notes_service.store, "delete_note", side_effect=_query_error()):
            assert notes_service.delete_note(note.id) is False
        assert notes_service.state.error_message == DELETE_FAILED
        assert notes_service.get_note_by_id(note.id) is not None


class TestSearchAndHelpers:
    """Tests for the pure state operations."""

    def test_search_query_round_trip(self, notes_service):
        notes_service.create_note(title="Grocery List")
        notes_service.create_note(title="Meeting")
        notes_service.set_search_query("grocery")
        assert [n.title for n in notes_service.state.filtered_notes] == ["Grocery List"]
        notes_service.clear_search()
        assert notes_service.state.search_query == ""
        assert len(notes_service.state.filtered_notes) == 2

    def test_search_does_not_touch_store(self, notes_service):
        with patch.object(notes_service.store, "search_notes") as search:
            notes_service.set_search_query("x")
        search.assert_not_called()

    def test_get_note_by_id_is_local_only(self, notes_service, note_store, clock):
        note_store.create_note(Note.create(id="stored", clock=clock))
        assert notes_service.get_note_by_id("stored") is None

    def test_clear_error(self, notes_service):
        with patch.object(notes_service.store, "fetch_all_notes", side_effect=_query_error()):
            notes_service.load()
        notes_service.clear_error()
        assert notes_service.state.error_message is None

    def test_notes_count(self, notes_service):
        notes_service.create_note()
        notes_service.create_note()
        assert notes_service.get_notes_count() == 2

    def test_notes_count_falls_back_to_list_length(self, notes_service):
        notes_service.create_note()
        with patch.object(notes_service.store, "get_notes_count", side_effect=RuntimeError):
            assert notes_service.get_notes_count() == 1

    def test_unsubscribe(self, notes_service):
        seen = []
        unsubscribe = notes_service.subscribe(seen.append)
        notes_service.create_note()
        unsubscribe()
        notes_service.create_note()
        assert len(seen) == 2  # clear-error and prepend of the first create
        assert all(isinstance(s, NotesState) for s in seen)

    def test_broken_listener_does_not_fail_command(self, notes_service):
        def explode(state):
            raise RuntimeError("observer bug")

        notes_service.subscribe(explode)
        assert notes_service.create_note(title="still saved") is not None


class TestScenario:
    """The service mirrors the store through a full note lifecycle."""

    def test_lifecycle(self, note_store, clock):
        service = NotesService(note_store, clock=clock)
        service.load()
        note = service.create_note(title="A")
        service.load()
        assert [n.id for n in service.state.notes] == [note.id]
        service.update_note(note.copy_with(title="B"))
        service.load()
        assert [(n.id, n.title) for n in service.state.notes] == [(note.id, "B")]
        service.delete_note(note.id)
        service.load()
        assert service.state.notes == ()
        assert note_store.purge_deleted_notes(0) == 1
