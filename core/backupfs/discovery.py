from __future__ import annotations

import plistlib
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .types import WECHAT_BUNDLE_ID, BackupStatus, BackupSummary


class BackupDiscoveryError(Exception):
    """Raised when a directory is not a readable iOS backup."""


class UnsupportedBackupError(Exception):
    """Raised when a backup is encrypted or otherwise unreadable by the exporter."""


def cell_data_version_for(wechat_version: str | None) -> str:
    """Session cell-data files are suffixed ``V7`` from WeChat 7 onwards."""
    if not wechat_version:
        return "V7"
    try:
        major = int(wechat_version.split(".", 1)[0])
    except ValueError:
        return "V7"
    return "V7" if major >= 7 else ""


def _load_plist(path: Path) -> dict:
    with path.open("rb") as fp:
        data = plistlib.load(fp)
    return data if isinstance(data, dict) else {}


class BackupDiscovery:
    """Find iOS backups under a base directory and check they hold WeChat data."""

    def __init__(self, base_path: Path):
        self.base_path = base_path.expanduser().resolve()

    def discover(self) -> List[BackupSummary]:
        backups: List[BackupSummary] = []
        if not self.base_path.exists():
            return backups
        for entry in sorted(self.base_path.iterdir()):
            if not entry.is_dir():
                continue
            try:
                backups.append(self.summarize(entry))
            except BackupDiscoveryError:
                continue
        return backups

    def summarize(self, root: Path) -> BackupSummary:
        manifest_plist = root / "Manifest.plist"
        if not manifest_plist.exists() or not (root / "Manifest.db").exists():
            raise BackupDiscoveryError(f"{root} is not an iOS backup")
        try:
            manifest = _load_plist(manifest_plist)
        except (OSError, plistlib.InvalidFileException) as exc:
            raise BackupDiscoveryError(str(exc)) from exc
        info = self._read_info_plist(root)
        wechat_version = self._read_wechat_version(info)

        is_encrypted = bool(manifest.get("IsEncrypted", False))
        if is_encrypted:
            status = BackupStatus.ENCRYPTED
        elif wechat_version is None and not self._lists_wechat(info):
            status = BackupStatus.NO_WECHAT
        else:
            status = BackupStatus.READY
        return BackupSummary(
            backup_id=(manifest.get("Lockdown") or {}).get("UniqueDeviceID") or root.name,
            path=root,
            display_name=info.get("Device Name") or info.get("Display Name") or root.name,
            device_name=info.get("Device Name"),
            product_version=info.get("Product Version"),
            wechat_version=wechat_version,
            is_encrypted=is_encrypted,
            status=status,
            last_modified_at=self._read_last_modified(root),
        )

    def open_backup(self, root: Path | str) -> BackupSummary:
        """Summarize ``root`` and refuse anything the exporter cannot read."""
        root = Path(root).expanduser()
        try:
            summary = self.summarize(root)
        except BackupDiscoveryError as exc:
            raise UnsupportedBackupError(str(exc)) from exc
        if summary.status is BackupStatus.ENCRYPTED:
            raise UnsupportedBackupError(f"Backup {summary.backup_id} is encrypted")
        if summary.status is BackupStatus.NO_WECHAT:
            raise UnsupportedBackupError(f"Backup {summary.backup_id} does not contain WeChat data")
        return summary

    @staticmethod
    def _read_info_plist(root: Path) -> dict:
        info_plist = root / "Info.plist"
        if not info_plist.exists():
            return {}
        try:
            return _load_plist(info_plist)
        except (OSError, plistlib.InvalidFileException):
            return {}

    @staticmethod
    def _lists_wechat(info: dict) -> bool:
        # an Info.plist without app data cannot rule WeChat out
        installed = info.get("Installed Applications") or []
        return not info or WECHAT_BUNDLE_ID in installed

    @staticmethod
    def _read_wechat_version(info: dict) -> Optional[str]:
        app = (info.get("Applications") or {}).get(WECHAT_BUNDLE_ID)
        if not isinstance(app, dict):
            return None
        raw = app.get("iTunesMetadata")
        if not raw:
            return None
        try:
            metadata = plistlib.loads(raw)
        except (plistlib.InvalidFileException, ValueError):
            return None
        return metadata.get("bundleShortVersionString") or metadata.get("bundleVersion")

    @staticmethod
    def _read_last_modified(root: Path) -> Optional[datetime]:
        try:
            stat = (root / "Manifest.db").stat()
        except OSError:
            return None
        return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
