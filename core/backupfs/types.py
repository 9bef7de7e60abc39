from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

WECHAT_DOMAIN = "AppDomain-com.tencent.xin"
WECHAT_SHARE_DOMAIN = "AppDomainGroup-group.com.tencent.xin"
WECHAT_BUNDLE_ID = "com.tencent.xin"


class BackupStatus(str, Enum):
    READY = "ready"
    ENCRYPTED = "encrypted"
    NO_WECHAT = "no_wechat"


@dataclass(slots=True)
class BackupSummary:
    backup_id: str
    path: Path
    display_name: str
    is_encrypted: bool
    status: BackupStatus
    device_name: Optional[str] = None
    product_version: Optional[str] = None
    wechat_version: Optional[str] = None
    last_modified_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class ManifestFileEntry:
    file_id: str
    domain: str
    relative_path: str
    flags: int
    size: Optional[int] = None
    mtime: Optional[int] = None

    @property
    def is_file(self) -> bool:
        return self.flags == 1

    @property
    def is_directory(self) -> bool:
        return self.flags == 2
