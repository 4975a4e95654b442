"""Configuration module for the Noteshelf persistence core."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: lives alongside the default data directory
_USER_ENV = Path.home() / ".noteshelf" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NoteshelfConfig(BaseModel):
    """Configuration for the note store, image store and notes service."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTESHELF_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESHELF_DATABASE_PATH", "data/db/notes_app.db")
        )
    )
    # When True, the store runs against a private in-memory SQLite database.
    # Nothing survives the process; used for tests and throwaway sessions.
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("NOTESHELF_IN_MEMORY_DB", "false")
    )
    # Managed image files
    images_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESHELF_IMAGES_DIR", "data/note_images")
        )
    )
    # Soft-deleted notes older than this are hard-deleted by purge
    purge_retention_days: int = Field(
        default_factory=lambda: int(
            os.getenv("NOTESHELF_PURGE_RETENTION_DAYS", "30")
        )
    )
    # Quiet period (seconds) before an edited note is persisted
    autosave_delay: float = Field(
        default_factory=lambda: float(os.getenv("NOTESHELF_AUTOSAVE_DELAY", "1.0"))
    )
    # Logging
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTESHELF_LOG_LEVEL", "INFO")
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTESHELF_LOG_DIR"))
            if os.getenv("NOTESHELF_LOG_DIR")
            else None
        )
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "NoteshelfConfig":
        """Reject settings that would make purge or autosave misbehave."""
        if self.purge_retention_days < 0:
            raise ValueError("purge_retention_days must be >= 0")
        if self.autosave_delay <= 0:
            raise ValueError("autosave_delay must be > 0")
        if self.in_memory_db:
            logger.info("In-memory database enabled; notes will not persist")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self, database_path: Optional[Path] = None) -> str:
        """Get the SQLite URL for a database file, creating its directory.

        Args:
            database_path: File to open. If None, uses database_path, or an
                in-memory database when in_memory_db is set.
        """
        if database_path is None and self.in_memory_db:
            return "sqlite://"
        db_path = self.get_absolute_path(Path(database_path or self.database_path))
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_images_dir(self) -> Path:
        """Get the absolute path to the managed images directory.

        The directory is not created here; the image store creates it on
        first use.
        """
        return self.get_absolute_path(self.images_dir)


# Create a global config instance
config = NoteshelfConfig()
