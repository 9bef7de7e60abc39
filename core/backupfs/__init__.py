from .backup_index import BackupIndex, ManifestQueryError
from .copier import BackupFileCopier
from .discovery import BackupDiscovery, UnsupportedBackupError, cell_data_version_for
from .filters import (
    FilterKind,
    PathFilter,
    message_db_filter,
    mmsetting_filter,
    session_cell_data_filter,
    user_folder_filter,
)
from .types import BackupStatus, BackupSummary, ManifestFileEntry

__all__ = [
    "BackupIndex",
    "BackupFileCopier",
    "BackupDiscovery",
    "BackupStatus",
    "BackupSummary",
    "FilterKind",
    "ManifestFileEntry",
    "ManifestQueryError",
    "PathFilter",
    "UnsupportedBackupError",
    "cell_data_version_for",
    "message_db_filter",
    "mmsetting_filter",
    "session_cell_data_filter",
    "user_folder_filter",
]
