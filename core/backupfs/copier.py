from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

from .backup_index import BackupIndex
from .types import ManifestFileEntry

logger = logging.getLogger(__name__)


class BackupFileCopier:
    """Materialize backup files into the export layout without touching the source."""

    def __init__(self, index: BackupIndex):
        self.index = index

    def copy(self, entry: ManifestFileEntry, destination: Path | str) -> bool:
        source = self.index.real_path(entry)
        if not source.exists():
            return False
        destination = Path(destination)
        # shared avatars and stickers are written by several sessions at once
        if _is_resolved(destination):
            return True
        temp_path = None
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=destination.parent,
                prefix=f".{destination.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                temp_path = Path(handle.name)
                with source.open("rb") as fp:
                    shutil.copyfileobj(fp, handle)
            if entry.mtime:
                os.utime(temp_path, (entry.mtime, entry.mtime))
            temp_path.replace(destination)
        except OSError as exc:
            logger.warning("Failed to copy %s to %s: %s", entry.relative_path, destination, exc)
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            return False
        return True

    def copy_path(self, relative_path: str, destination: Path | str) -> bool:
        entry = self.index.find(relative_path)
        if entry is None or not entry.is_file:
            return False
        return self.copy(entry, destination)


def _is_resolved(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except OSError:
        return False
