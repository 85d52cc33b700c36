"""File helpers shared by the config and state files."""

import os
import time
import logging
import tempfile
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def open_temp_beside(path: Path):
    """Opens a temporary file in the same directory as `path` for a later `os.replace`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    return tempfile.NamedTemporaryFile(
        'w', encoding='utf-8', dir=path.parent,
        prefix=f".{path.name}.", suffix='.tmp', delete=False
    )


def discard(temp_path: Optional[str]):
    if not temp_path:
        return
    try:
        os.unlink(temp_path)
    except OSError:
        pass  # Never created or already gone


def atomic_write_text(path: Path, data: str):
    """
    Replaces `path` with `data` so readers see either the old or the new content.

    Raises:
        OSError: If the file could not be written. No temporary file is left behind.
    """
    temp_path = None
    try:
        with open_temp_beside(path) as f:
            temp_path = f.name
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError:
        discard(temp_path)
        raise


def backup_corrupt_file(path: Path) -> Optional[Path]:
    """Moves an unreadable file aside as `<stem>.<epoch>.bak`. Returns the backup path."""
    try:
        backup_path = path.with_suffix(f".{int(time.time())}.bak")
        path.rename(backup_path)
        logger.info(f"Backed up corrupted file to {backup_path}")
        return backup_path
    except OSError as e:
        logger.error(f"Could not back up corrupted file {path}: {e}")
        return None
