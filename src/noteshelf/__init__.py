"""
Noteshelf - local persistence core for a note-taking application.

This package owns the embedded SQLite store for notes and their attached
images, the image file store, and the in-memory notes state that a
presentation layer observes.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("noteshelf")
except PackageNotFoundError:
    __version__ = "0.1.0"
