from __future__ import annotations

import logging
from typing import List

from core.backupfs import BackupIndex, mmsetting_filter, user_folder_filter
from core.backupfs.filters import CRC_SUFFIX

from .contacts import Profile
from .mmkv import parse_mmkv_profile, parse_mmsetting_archive

logger = logging.getLogger(__name__)

EMPTY_FOLDER_HASH = "0" * 32


def user_root(profile: Profile) -> str:
    return f"Documents/{profile.hash}"


def discover_accounts(index: BackupIndex) -> List[Profile]:
    """Find every backup-owner account with a user folder in ``index``."""
    folder_filter = user_folder_filter()
    folders = []
    for entry in index.select(folder_filter):
        folder = folder_filter.parse(entry.relative_path)
        if folder and folder != EMPTY_FOLDER_HASH and entry.is_directory:
            folders.append(folder)

    profiles = _profiles_from_mmkv(index)
    accounts: List[Profile] = []
    for folder in folders:
        profile = profiles.get(folder) or _profile_from_legacy_archive(index, folder)
        if profile is None:
            logger.info("No settings archive for user folder %s", folder)
            profile = Profile(hash=folder)
        accounts.append(profile)
    return accounts


def _profiles_from_mmkv(index: BackupIndex) -> dict[str, Profile]:
    settings_filter = mmsetting_filter()
    profiles: dict[str, Profile] = {}
    for entry in index.select(settings_filter):
        uid = settings_filter.parse(entry.relative_path)
        data = index.read_bytes(entry.relative_path)
        crc_data = index.read_bytes(entry.relative_path + CRC_SUFFIX)
        if data is None or crc_data is None:
            logger.debug("Settings archive %s has no readable data/crc pair", uid)
            continue
        profile = parse_mmkv_profile(data, crc_data)
        if profile is not None:
            profiles[profile.hash] = profile
    return profiles


def _profile_from_legacy_archive(index: BackupIndex, folder: str) -> Profile | None:
    data = index.read_bytes(f"Documents/{folder}/mmsetting.archive")
    if data is None:
        return None
    profile = parse_mmsetting_archive(data)
    if profile is not None and profile.hash != folder:
        logger.warning("mmsetting.archive in %s belongs to another account", folder)
        return None
    return profile
