"""Notes Aggregate State: the in-memory read model the presentation layer observes."""

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Tuple

from noteshelf.exceptions import NoteshelfError
from noteshelf.models.schema import Clock, Note, generate_id, utc_now
from noteshelf.storage.note_store import NoteStore

logger = logging.getLogger(__name__)

LOAD_FAILED = "Failed to load notes. Please try again."
CREATE_FAILED = "Failed to create note. Please try again."
SAVE_FAILED = "Failed to save note. Please try again."
DELETE_FAILED = "Failed to delete note. Please try again."
UNEXPECTED_ERROR = "An unexpected error occurred."

Listener = Callable[["NotesState"], None]


@dataclass(frozen=True)
class NotesState:
    """Immutable snapshot of the notes list and its UI flags."""

    notes: Tuple[Note, ...] = field(default_factory=tuple)
    search_query: str = ""
    is_loading: bool = False
    error_message: Optional[str] = None

    @property
    def filtered_notes(self) -> List[Note]:
        """Notes whose title, preview or category contain the search query."""
        if not self.search_query:
            return list(self.notes)
        query = self.search_query.lower()
        return [
            note
            for note in self.notes
            if query in note.title.lower()
            or query in note.content_preview.lower()
            or (note.category is not None and query in note.category.lower())
        ]

    @property
    def sorted_notes(self) -> List[Note]:
        """``filtered_notes``, most recently updated first (stable on ties)."""
        return sorted(self.filtered_notes, key=lambda n: n.updated_at, reverse=True)


class NotesService:
    """Serializes note commands against the store and republishes the list.

    Each mutating command clears the previous error, runs its store call to
    completion under a lock, then swaps in a whole new ``NotesState``. Store
    failures become a short user-facing ``error_message``; the details go to
    the log only.
    """

    def __init__(self, store: NoteStore, clock: Optional[Clock] = None):
        """Initialize the service.

        Args:
            store: Note persistence backend.
            clock: Source of "now" for new and edited notes. Defaults to utc_now.
        """
        self.store = store
        self._clock: Clock = clock or utc_now
        self._state = NotesState()
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []

    @property
    def state(self) -> NotesState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with every new state. Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                # A broken observer must not fail the command
                logger.warning(f"Notes listener failed: {e}", exc_info=True)

    def _fail(self, error: Exception, message: str, action: str) -> None:
        if isinstance(error, NoteshelfError):
            logger.error(f"Database error {action}: {error}")
            self._set_state(error_message=message, is_loading=False)
        else:
            logger.exception(f"Failed {action}: {error}")
            self._set_state(error_message=UNEXPECTED_ERROR, is_loading=False)

    def load(self) -> None:
        """Replace the list with every active note from the store."""
        with self._lock:
            self._set_state(is_loading=True, error_message=None)
            try:
                notes = self.store.fetch_all_notes()
            except Exception as e:
                self._fail(e, LOAD_FAILED, "loading notes")
                return
            self._set_state(notes=tuple(notes), is_loading=False)
            logger.debug(f"Loaded {len(notes)} notes from database")

    def refresh(self) -> None:
        self.load()

    def create_note(
        self, title: str = "", content: str = "", category: Optional[str] = None
    ) -> Optional[Note]:
        """Create and persist a note, placing it first in the list.

        Returns:
            The new note, or None if it could not be saved.
        """
        with self._lock:
            self._set_state(error_message=None)
            try:
                note = Note.create(
                    id=generate_id(),
                    title=title,
                    content=content,
                    category=category,
                    clock=self._clock,
                )
                self.store.create_note(note)
            except Exception as e:
                self._fail(e, CREATE_FAILED, "creating note")
                return None
            # Newest note goes first; sorted_notes still orders by updated_at
            self._set_state(notes=(note,) + self._state.notes)
            logger.debug(f"Created note: {note.id}")
            return note

    def update_note(self, note: Note) -> bool:
        """Persist an edited note and replace its list entry.

        On failure the list keeps the previous version and the caller keeps
        its unsaved edit.
        """
        with self._lock:
            self._set_state(error_message=None)
            try:
                stamped = note.copy_with(
                    updated_at=max(self._clock(), note.created_at)
                )
                saved = self.store.update_note(stamped)
            except Exception as e:
                self._fail(e, SAVE_FAILED, "updating note")
                return False
            self._set_state(
                notes=tuple(saved if n.id == saved.id else n for n in self._state.notes)
            )
            logger.debug(f"Updated note: {note.id}")
            return True

    def delete_note(self, note_id: str, hard_delete: bool = False) -> bool:
        """Delete a note and drop it from the list (soft or hard alike)."""
        with self._lock:
            self._set_state(error_message=None)
            try:
                self.store.delete_note(note_id, hard_delete=hard_delete)
            except Exception as e:
                self._fail(e, DELETE_FAILED, "deleting note")
                return False
            self._set_state(
                notes=tuple(n for n in self._state.notes if n.id != note_id)
            )
            logger.debug(f"Deleted note: {note_id} (hard: {hard_delete})")
            return True

    def set_search_query(self, query: str) -> None:
        with self._lock:
            self._set_state(search_query=query)

    def clear_search(self) -> None:
        with self._lock:
            self._set_state(search_query="")

    def clear_error(self) -> None:
        with self._lock:
            self._set_state(error_message=None)

    def get_note_by_id(self, note_id: str) -> Optional[Note]:
        """Look a note up in the loaded list (no store round trip)."""
        return next((n for n in self._state.notes if n.id == note_id), None)

    def get_notes_count(self) -> int:
        """Active note count from the store, or the loaded list's length."""
        try:
            return self.store.get_notes_count()
        except Exception as e:
            logger.warning(f"Falling back to in-memory note count: {e}")
            return len(self._state.notes)
