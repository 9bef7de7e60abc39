"""Path filters over the backup index.

A filter pairs a virtual-path prefix with a matcher for the remainder of the
path. The prefix bounds a contiguous range of the sorted index; the matcher is
only evaluated inside that range.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

MMAPPED_KV_DIR = "Documents/MMappedKV/"
MMSETTING_PREFIX = "mmsetting.archive."
CRC_SUFFIX = ".crc"


class FilterKind(str, Enum):
    LITERAL = "literal"
    PATTERN = "pattern"
    EXCLUDE_SUFFIX = "exclude_suffix"


@lru_cache(maxsize=64)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def normalize_virtual_path(path: str, *, trailing_slash: bool = False) -> str:
    vpath = path.replace("\\", "/")
    if trailing_slash and not vpath.endswith("/"):
        vpath += "/"
    return vpath


@dataclass(frozen=True, slots=True)
class PathFilter:
    kind: FilterKind
    prefix: str
    pattern: str = ""
    excluded_suffix: str = ""

    def in_range(self, relative_path: str) -> bool:
        return relative_path.startswith(self.prefix)

    def matches(self, relative_path: str) -> bool:
        if not self.in_range(relative_path):
            return False
        remainder = relative_path[len(self.prefix):]
        if self.kind is FilterKind.LITERAL:
            return self.pattern in remainder
        if self.kind is FilterKind.PATTERN:
            return _compile(self.pattern).search(remainder) is not None
        if self.kind is FilterKind.EXCLUDE_SUFFIX:
            return not relative_path.endswith(self.excluded_suffix)
        raise ValueError(f"Unknown filter kind: {self.kind}")

    def parse(self, relative_path: str) -> str:
        """Extract the interesting part of a matching path, or ``""``."""
        if not self.matches(relative_path):
            return ""
        remainder = relative_path[len(self.prefix):]
        if self.kind is FilterKind.PATTERN:
            match = _compile(self.pattern).search(remainder)
            if match is None:
                return ""
            return match.group(1) if match.re.groups else match.group(0)
        return remainder


def message_db_filter(user_root: str) -> PathFilter:
    prefix = normalize_virtual_path(user_root, trailing_slash=True) + "DB/"
    return PathFilter(FilterKind.PATTERN, prefix, r"^(message_[0-9]{1,4}\.sqlite)$")


def user_folder_filter() -> PathFilter:
    return PathFilter(FilterKind.PATTERN, "Documents/", r"^([^/]{32})$")


def session_cell_data_filter(base_path: str, cell_data_version: str) -> PathFilter:
    return PathFilter(FilterKind.LITERAL, normalize_virtual_path(base_path), "celldata" + cell_data_version)


def mmsetting_filter(uid: str = "") -> PathFilter:
    return PathFilter(
        FilterKind.EXCLUDE_SUFFIX,
        MMAPPED_KV_DIR + MMSETTING_PREFIX + uid,
        excluded_suffix=CRC_SUFFIX,
    )
