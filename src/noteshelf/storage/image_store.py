"""Image Store: managed image files and their note associations.

Image handling is ancillary to note persistence, so everything except
``import_from_source`` degrades to a safe default (False, 0, None) on
failure and logs the cause instead of raising.
"""
import logging
import shutil
from pathlib import Path
from typing import Iterable, Optional, Set, Union

from noteshelf.config import config
from noteshelf.exceptions import ImageIOError, StorageError
from noteshelf.models.schema import Clock, generate_id, to_millis
from noteshelf.storage.note_store import NoteStore

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".jpg"

PathLike = Union[str, Path]


class ImageStore:
    """Copies picked images into a managed directory and tracks them per note."""

    def __init__(
        self,
        note_store: NoteStore,
        images_dir: Optional[PathLike] = None,
        clock: Optional[Clock] = None,
    ):
        """Initialize the image store.

        Args:
            note_store: Store holding the association rows.
            images_dir: Managed directory. If None, uses config.get_images_dir().
                Created on first use.
            clock: Source of "now" for managed file names. Defaults to the
                note store's clock.
        """
        self.note_store = note_store
        self._images_dir = Path(images_dir) if images_dir else config.get_images_dir()
        self._clock: Clock = clock or note_store.clock

    @property
    def images_dir(self) -> Path:
        """The managed images directory, created if missing."""
        self._images_dir.mkdir(parents=True, exist_ok=True)
        return self._images_dir

    def _managed_name(self, source: Path) -> str:
        # Millisecond prefix keeps names sortable by capture time
        suffix = source.suffix or DEFAULT_EXTENSION
        return f"{to_millis(self._clock())}_{generate_id()}{suffix}"

    def import_from_source(self, source_path: PathLike) -> str:
        """Copy a picked file into the managed directory under a fresh name.

        Args:
            source_path: The file handed over by the picker.

        Returns:
            Path of the managed copy.

        Raises:
            ImageIOError: If the file cannot be copied.
        """
        source = Path(source_path)
        try:
            target = self.images_dir / self._managed_name(source)
            shutil.copy2(source, target)
        except OSError as e:
            logger.error(f"Failed to import image {source}: {e}")
            raise ImageIOError(
                "Failed to import image",
                path=str(source),
                original_error=e,
            ) from e
        logger.info(f"Imported image to {target}")
        return str(target)

    def attach(
        self, note_id: str, file_path: PathLike, display_order: int = 0
    ) -> Optional[str]:
        """Record that ``file_path`` belongs to a note.

        Returns:
            The new image id, or None if the association could not be stored.
        """
        image_id = generate_id()
        try:
            self.note_store.add_image_to_note(
                image_id, note_id, str(file_path), display_order
            )
        except StorageError as e:
            logger.warning(f"Failed to attach image to note {note_id}: {e}")
            return None
        return image_id

    def detach(self, image_id: str, file_path: PathLike) -> bool:
        """Remove an association row, then delete its file.

        A file that is already gone counts as deleted. Returns False if
        either step fails.
        """
        try:
            self.note_store.remove_image_from_note(image_id)
        except StorageError as e:
            logger.warning(f"Failed to detach image {image_id}: {e}")
            return False
        try:
            Path(file_path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to delete image file {file_path}: {e}")
            return False
        return True

    def delete_image(self, file_path: PathLike) -> bool:
        """Delete one image file. Returns True only if a file was removed."""
        path = Path(file_path)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to delete image {path}: {e}")
            return False
        logger.debug(f"Deleted image {path}")
        return True

    def delete_images(self, file_paths: Iterable[PathLike]) -> int:
        """Delete several image files. Returns how many were removed."""
        return sum(1 for path in file_paths if self.delete_image(path))

    def _referenced_paths(self) -> Set[str]:
        referenced: Set[str] = set()
        for record in self.note_store.get_all_image_records():
            referenced.add(record.file_path)
            referenced.add(str(Path(record.file_path).resolve()))
        return referenced

    def reconcile_orphans(self) -> int:
        """Delete managed files that no association row refers to.

        Returns:
            Number of files deleted; 0 if the association rows or the
            directory cannot be read.
        """
        try:
            referenced = self._referenced_paths()
        except StorageError as e:
            # Without the row set every file would look orphaned
            logger.warning(f"Orphan cleanup skipped: {e}")
            return 0

        cleaned = 0
        try:
            entries = list(self.images_dir.iterdir())
        except OSError as e:
            logger.warning(f"Orphan cleanup skipped, cannot list {self._images_dir}: {e}")
            return 0

        for entry in entries:
            if str(entry) in referenced or str(entry.resolve()) in referenced:
                continue
            try:
                if not entry.is_file():
                    continue
                entry.unlink()
            except FileNotFoundError:
                # Removed concurrently; it's gone either way
                pass
            except OSError as e:
                logger.warning(f"Failed to remove orphaned image {entry.name}: {e}")
                continue
            cleaned += 1
            logger.debug(f"Removed orphaned image {entry.name}")

        if cleaned:
            logger.info(f"Removed {cleaned} orphaned images")
        return cleaned

    def file_exists(self, file_path: PathLike) -> bool:
        try:
            return Path(file_path).is_file()
        except OSError:
            return False

    def file_size(self, file_path: PathLike) -> int:
        """Size of an image file in bytes, 0 if it cannot be read."""
        try:
            return Path(file_path).stat().st_size
        except OSError:
            return 0

    def total_managed_size(self) -> int:
        """Combined size in bytes of every file in the managed directory."""
        total = 0
        try:
            for entry in self.images_dir.iterdir():
                if entry.is_file():
                    total += self.file_size(entry)
        except OSError as e:
            logger.debug(f"Could not size {self._images_dir}: {e}")
            return 0
        return total
