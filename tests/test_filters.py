from __future__ import annotations

from core.backupfs import (
    FilterKind,
    PathFilter,
    message_db_filter,
    mmsetting_filter,
    session_cell_data_filter,
    user_folder_filter,
)

ROOT = "Documents/" + "a" * 32


def test_message_db_filter_matches_numbered_shards_only():
    path_filter = message_db_filter(ROOT)

    assert path_filter.matches(f"{ROOT}/DB/message_1.sqlite")
    assert path_filter.matches(f"{ROOT}/DB/message_12.sqlite")
    assert not path_filter.matches(f"{ROOT}/DB/message_1.sqlite-wal")
    assert not path_filter.matches(f"{ROOT}/DB/MM.sqlite")
    assert path_filter.parse(f"{ROOT}/DB/message_3.sqlite") == "message_3.sqlite"


def test_filters_never_match_outside_their_prefix():
    path_filter = message_db_filter(ROOT)
    other = "Documents/" + "b" * 32 + "/DB/message_1.sqlite"

    assert not path_filter.in_range(other)
    assert not path_filter.matches(other)
    assert path_filter.parse(other) == ""


def test_in_range_is_separate_from_matching():
    path_filter = PathFilter(FilterKind.LITERAL, "Documents/x/", "celldataV7")

    assert path_filter.in_range("Documents/x/other")
    assert not path_filter.matches("Documents/x/other")
    assert path_filter.parse("Documents/x/ab/celldataV7") == "ab/celldataV7"


def test_mmsetting_filter_skips_checksum_files():
    path_filter = mmsetting_filter()

    assert path_filter.matches("Documents/MMappedKV/mmsetting.archive.wxid_abc")
    assert not path_filter.matches("Documents/MMappedKV/mmsetting.archive.wxid_abc.crc")
    assert path_filter.parse("Documents/MMappedKV/mmsetting.archive.wxid_abc") == "wxid_abc"
    assert not mmsetting_filter("wxid_other").matches("Documents/MMappedKV/mmsetting.archive.wxid_abc")


def test_user_folder_filter_extracts_direct_children_only():
    path_filter = user_folder_filter()

    assert path_filter.parse(ROOT) == "a" * 32
    assert path_filter.parse(f"{ROOT}/DB") == ""
    assert path_filter.parse("Documents/MMappedKV") == ""


def test_session_cell_data_filter_uses_version_suffix():
    path_filter = session_cell_data_filter(f"{ROOT}/session/data/", "V7")

    assert path_filter.matches(f"{ROOT}/session/data/12/34/celldataV7")
    assert not path_filter.matches(f"{ROOT}/session/data/12/34/celldata")
