"""Debounced saving for an editing surface.

Each edit restarts a quiet-period timer; the note is saved once the timer
fires. ``close`` flushes synchronously, so a pending edit is never dropped
when the editor goes away.
"""
import logging
import threading
from typing import Any, Callable, Optional

from noteshelf.config import config
from noteshelf.models.schema import Note

logger = logging.getLogger(__name__)


class AutoSaver:
    """Coalesces rapid edits of one note into a single save."""

    def __init__(
        self, save: Callable[[Note], Any], delay: Optional[float] = None
    ) -> None:
        """Initialize the saver.

        Args:
            save: Persists a note, e.g. ``NotesService.update_note``. A falsy
                return value or an exception counts as a failed save.
            delay: Quiet period in seconds. If None, uses config.autosave_delay.
        """
        self._save = save
        self._delay = config.autosave_delay if delay is None else delay
        if self._delay <= 0:
            raise ValueError("delay must be > 0")
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[Note] = None
        self._closed = False

    @property
    def pending(self) -> Optional[Note]:
        """The note waiting to be saved, if any."""
        return self._pending

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, note: Note) -> None:
        """Mark ``note`` as the latest edit and restart the timer.

        Raises:
            RuntimeError: If the saver has been closed.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("AutoSaver is closed")
            self._pending = note
            self._cancel_timer()
            self._timer = threading.Timer(self._delay, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        """Called by timer. Saves whatever is pending."""
        self.flush()

    def flush(self) -> Any:
        """Cancel the timer and save the pending note now.

        Returns:
            The save callable's result, or None if nothing was pending.
            A failed save keeps the note pending for the next flush.
        """
        with self._lock:
            self._cancel_timer()
            note = self._pending
            if note is None:
                return None
            try:
                result = self._save(note)
            except Exception as e:
                logger.error(f"Autosave failed for note {note.id}: {e}")
                return False
            if not result:
                logger.warning(f"Autosave did not persist note {note.id}; keeping it pending")
                return result
            # A newer edit may have been scheduled from inside save
            if self._pending is note:
                self._pending = None
            return result

    def close(self) -> Any:
        """Flush any pending edit and stop accepting new ones."""
        with self._lock:
            result = self.flush()
            self._closed = True
        if self._pending is not None:
            logger.warning(
                f"AutoSaver closed with unsaved note {self._pending.id}"
            )
        return result
