from __future__ import annotations

import logging
import plistlib
import sqlite3
from bisect import bisect_left
from pathlib import Path
from typing import Iterable, Iterator, List, Sequence

from iphone_backup_decrypt import utils as ib_utils

from .filters import PathFilter, normalize_virtual_path
from .types import WECHAT_DOMAIN, ManifestFileEntry

logger = logging.getLogger(__name__)


class ManifestQueryError(RuntimeError):
    """Raised when manifest queries fail."""


class BackupIndex:
    """Sorted, read-only catalog of one domain's files in an unencrypted backup."""

    def __init__(self, backup_root: Path | str, entries: Iterable[ManifestFileEntry]):
        self.backup_root = Path(backup_root)
        unique: dict[str, ManifestFileEntry] = {}
        for entry in entries:
            if entry.relative_path in unique:
                logger.warning("Duplicate manifest path ignored: %s", entry.relative_path)
                continue
            unique[entry.relative_path] = entry
        self._entries = tuple(sorted(unique.values(), key=lambda item: item.relative_path))
        self._paths = [entry.relative_path for entry in self._entries]

    @classmethod
    def load(cls, backup_root: Path | str, domain: str = WECHAT_DOMAIN) -> "BackupIndex":
        root = Path(backup_root)

        def _query(cursor: sqlite3.Cursor) -> List[ManifestFileEntry]:
            cursor.execute(
                """
                SELECT fileID, domain, relativePath, flags, file
                FROM Files
                WHERE domain = ? AND flags IN (1, 2)
                """,
                (domain,),
            )
            return [cls._row_to_entry(row) for row in cursor.fetchall()]

        entries = cls._with_manifest_cursor(root, _query)
        logger.info("Loaded %d manifest entries for %s", len(entries), domain)
        return cls(root, entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ManifestFileEntry]:
        return iter(self._entries)

    def __contains__(self, relative_path: object) -> bool:
        return isinstance(relative_path, str) and self.find(relative_path) is not None

    def find(self, relative_path: str) -> ManifestFileEntry | None:
        relative_path = normalize_virtual_path(relative_path)
        pos = bisect_left(self._paths, relative_path)
        if pos < len(self._paths) and self._paths[pos] == relative_path:
            return self._entries[pos]
        return None

    def iter_prefix(self, prefix: str) -> Iterator[ManifestFileEntry]:
        # every path starting with ``prefix`` sorts at or after it, contiguously
        pos = bisect_left(self._paths, prefix)
        while pos < len(self._paths) and self._paths[pos].startswith(prefix):
            yield self._entries[pos]
            pos += 1

    def select(self, path_filter: PathFilter) -> List[ManifestFileEntry]:
        return [entry for entry in self.iter_prefix(path_filter.prefix) if path_filter.matches(entry.relative_path)]

    def real_path(self, entry: ManifestFileEntry) -> Path:
        sharded = self.backup_root / entry.file_id[:2] / entry.file_id
        if sharded.exists():
            return sharded
        flat = self.backup_root / entry.file_id
        if flat.exists():
            return flat
        return sharded

    def real_path_of(self, relative_path: str) -> Path | None:
        entry = self.find(relative_path)
        if entry is None or not entry.is_file:
            return None
        path = self.real_path(entry)
        return path if path.exists() else None

    def read_bytes(self, relative_path: str) -> bytes | None:
        path = self.real_path_of(relative_path)
        if path is None:
            return None
        try:
            return path.read_bytes()
        except OSError as exc:
            logger.warning("Failed to read %s: %s", relative_path, exc)
            return None

    @staticmethod
    def _row_to_entry(row: Sequence) -> ManifestFileEntry:
        file_id, domain, relative_path, flags, file_blob = row
        size = None
        mtime = None
        if file_blob:
            try:
                plist = ib_utils.FilePlist(file_blob)
                size = plist.filesize
                mtime = plist.mtime
            except (plistlib.InvalidFileException, KeyError, IndexError, TypeError, ValueError, AttributeError):
                logger.debug("Unreadable file metadata for %s", relative_path)
        return ManifestFileEntry(
            file_id=file_id,
            domain=domain,
            relative_path=normalize_virtual_path(relative_path or ""),
            flags=flags,
            size=size,
            mtime=mtime,
        )

    @staticmethod
    def _with_manifest_cursor(backup_root: Path, fn):
        manifest_db = backup_root / "Manifest.db"
        if not manifest_db.exists():
            raise ManifestQueryError(f"Manifest.db not found at {manifest_db}")
        try:
            conn = sqlite3.connect(f"{manifest_db.resolve().as_uri()}?mode=ro", uri=True)
            try:
                return fn(conn.cursor())
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise ManifestQueryError(str(exc)) from exc
