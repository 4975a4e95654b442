"""Startup wiring for an application embedding the Noteshelf core.

Builds one ``NoteStore`` and hands the same instance to the image store and
the notes service, so every consumer shares a single database engine.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from noteshelf.config import NoteshelfConfig, config
from noteshelf.exceptions import StorageError
from noteshelf.models.schema import Clock
from noteshelf.observability import configure_logging
from noteshelf.services.autosave import AutoSaver
from noteshelf.services.notes_service import NotesService
from noteshelf.storage.image_store import ImageStore
from noteshelf.storage.note_store import NoteStore

logger = logging.getLogger(__name__)


@dataclass
class Noteshelf:
    """The wired-up core: stores plus the notes read model."""

    config: NoteshelfConfig
    note_store: NoteStore
    image_store: ImageStore
    notes: NotesService

    def autosaver(self, delay: Optional[float] = None) -> AutoSaver:
        """A debounced saver for one editing surface, saving through the service."""
        return AutoSaver(
            self.notes.update_note,
            delay=self.config.autosave_delay if delay is None else delay,
        )

    def run_maintenance(self) -> Dict[str, int]:
        """Purge expired soft-deleted notes, then remove orphaned image files."""
        purged = self.note_store.purge_deleted_notes(self.config.purge_retention_days)
        orphans = self.image_store.reconcile_orphans()
        logger.info(f"Maintenance: purged {purged} notes, removed {orphans} orphaned images")
        return {"purged_notes": purged, "orphaned_images": orphans}

    def shutdown(self) -> None:
        self.note_store.close_database()


def build_noteshelf(
    cfg: Optional[NoteshelfConfig] = None,
    configure_logs: bool = True,
    clock: Optional[Clock] = None,
    load: bool = True,
) -> Noteshelf:
    """Build the store, image store and service from configuration.

    Args:
        cfg: Configuration to use. Defaults to the global config.
        configure_logs: Attach the rotating file handler.
        clock: Source of "now" shared by the store and the service.
        load: Open the database and load the notes list immediately.

    Returns:
        The wired-up core. If the database cannot be opened the service is
        left empty with its error message set, rather than raising.
    """
    cfg = cfg or config

    if configure_logs:
        level = getattr(logging, cfg.log_level.upper(), logging.INFO)
        try:
            configure_logging(log_dir=cfg.log_dir, level=level, console=False)
        except OSError as e:
            # Fall back to basic console logging if file logging fails
            logging.basicConfig(level=level)
            logger.warning(f"Failed to configure file logging: {e}")

    if cfg.in_memory_db:
        store = NoteStore(in_memory=True, clock=clock)
    else:
        store = NoteStore(
            database_path=cfg.get_absolute_path(cfg.database_path),
            in_memory=False,
            clock=clock,
        )
    images = ImageStore(store, images_dir=cfg.get_images_dir())
    service = NotesService(store, clock=clock)

    if load:
        try:
            logger.info(f"Schema version: {store.schema_version}")
        except StorageError as e:
            logger.error(f"Failed to initialize database: {e}")
        service.load()

    return Noteshelf(config=cfg, note_store=store, image_store=images, notes=service)
