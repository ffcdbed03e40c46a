"""
Pointer file -- the `.bt` file binding a directory to one magnet link.

The pointer is plain UTF-8 holding a single magnet identifier. It lives
at a reserved name inside the synced directory, and every snapshot of
that directory leaves it out.
"""

from __future__ import annotations

import logging
from pathlib import Path

from . import BT_FILE
from ._atomic import atomic_write_bytes
from .errors import PointerNotFoundError

logger = logging.getLogger("btmut.pointer")


def pointer_location(directory: Path) -> Path:
    return Path(directory) / BT_FILE


def exists(directory: Path) -> bool:
    """Check whether the directory is tracked."""
    return pointer_location(directory).is_file()


def read(directory: Path) -> str:
    """Read the identifier the directory tracks.

    Raises:
        PointerNotFoundError: If the directory has no pointer file.
    """
    location = pointer_location(directory)
    try:
        return location.read_text(encoding="utf-8").strip()
    except FileNotFoundError as exc:
        raise PointerNotFoundError(f"No {BT_FILE} file in {directory}") from exc


def write(directory: Path, identifier: str) -> Path:
    """Replace the pointer atomically.

    Args:
        directory: Synced directory. Must already exist.
        identifier: Magnet identifier to track.

    Returns:
        Path: Location of the pointer file.
    """
    location = atomic_write_bytes(
        pointer_location(directory), identifier.encode("utf-8")
    )
    logger.debug("Pointer updated: %s", location)
    return location
