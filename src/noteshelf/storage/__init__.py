"""Storage layer for the Noteshelf persistence core."""

from noteshelf.storage.image_store import ImageStore
from noteshelf.storage.note_store import NoteStore

__all__ = [
    "NoteStore",
    "ImageStore",
]
