from __future__ import annotations

import hashlib
import plistlib
import sqlite3
import struct
import zlib
from pathlib import Path

import pytest

from core.backupfs.types import WECHAT_BUNDLE_ID, WECHAT_DOMAIN

OWNER = "wxid_owner"
OWNER_HASH = hashlib.md5(OWNER.encode("utf-8")).hexdigest()
OWNER_ROOT = f"Documents/{OWNER_HASH}"


def md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def pb_bytes(number: int, data: bytes | str) -> bytes:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return varint(number << 3 | 2) + varint(len(data)) + data


def pb_int(number: int, value: int) -> bytes:
    return varint(number << 3) + varint(value)


def mmkv_file(items: list[tuple[str, str]]) -> tuple[bytes, bytes]:
    """Return ``(data, crc)`` for an MMKV file holding string values."""
    payload = bytearray(varint(len(items)))
    for key, value in items:
        raw_value = varint(len(value.encode("utf-8"))) + value.encode("utf-8") if value else b""
        payload += varint(len(key)) + key.encode("utf-8")
        payload += varint(len(raw_value)) + raw_value
    data = struct.pack("<I", len(payload)) + bytes(payload) + b"\x00" * 8
    crc = struct.pack("<I", zlib.crc32(bytes(payload)) & 0xFFFFFFFF)
    return data, crc


class BackupBuilder:
    """Writes a minimal unencrypted iOS backup: manifest, plists and hashed file store."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.rows: list[tuple[str, str, str, int]] = []

    def file_id(self, relative_path: str, domain: str = WECHAT_DOMAIN) -> str:
        return hashlib.sha1(f"{domain}-{relative_path}".encode("utf-8")).hexdigest()

    def storage_path(self, relative_path: str, domain: str = WECHAT_DOMAIN) -> Path:
        file_id = self.file_id(relative_path, domain)
        return self.root / file_id[:2] / file_id

    def add_directory(self, relative_path: str, domain: str = WECHAT_DOMAIN) -> None:
        self.rows.append((self.file_id(relative_path, domain), domain, relative_path, 2))

    def add_file(self, relative_path: str, data: bytes, domain: str = WECHAT_DOMAIN) -> Path:
        path = self.storage_path(relative_path, domain)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        self.rows.append((self.file_id(relative_path, domain), domain, relative_path, 1))
        return path

    def add_sqlite(
        self,
        relative_path: str,
        script: str,
        rows: dict[str, list[tuple]] | None = None,
        domain: str = WECHAT_DOMAIN,
    ) -> Path:
        path = self.storage_path(relative_path, domain)
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path)
        try:
            conn.executescript(script)
            for table, values in (rows or {}).items():
                for value in values:
                    marks = ", ".join("?" for _ in value)
                    conn.execute(f"INSERT INTO {table} VALUES ({marks})", value)
            conn.commit()
        finally:
            conn.close()
        self.rows.append((self.file_id(relative_path, domain), domain, relative_path, 1))
        return path

    def add_message_db(self, relative_path: str, chats: dict[str, list[tuple]]) -> Path:
        script = "".join(
            f"CREATE TABLE Chat_{md5(usr_name)} "
            "(MesLocalID INTEGER PRIMARY KEY, CreateTime INTEGER, Message TEXT, Des INTEGER, Type INTEGER);"
            for usr_name in chats
        )
        rows = {
            f"Chat_{md5(usr_name)}": [(msg_id, create_time, message, des, msg_type) for create_time, message, des, msg_type, msg_id in values]
            for usr_name, values in chats.items()
        }
        return self.add_sqlite(relative_path, script, rows)

    def add_contacts(self, relative_path: str, friends: list[tuple]) -> Path:
        return self.add_sqlite(
            relative_path,
            "CREATE TABLE Friend (userName TEXT, type INTEGER, dbContactRemark BLOB, "
            "dbContactHeadImage BLOB, dbContactChatRoom BLOB);",
            {"Friend": friends},
        )

    def finish(self, *, encrypted: bool = False, wechat_version: str | None = "8.0.44", installed: bool = True) -> Path:
        conn = sqlite3.connect(self.root / "Manifest.db")
        try:
            conn.execute(
                "CREATE TABLE Files (fileID TEXT PRIMARY KEY, domain TEXT, relativePath TEXT, flags INTEGER, file BLOB)"
            )
            conn.executemany(
                "INSERT INTO Files VALUES (?, ?, ?, ?, NULL)",
                self.rows,
            )
            conn.commit()
        finally:
            conn.close()

        manifest = {"IsEncrypted": encrypted, "Lockdown": {"UniqueDeviceID": self.root.name}}
        (self.root / "Manifest.plist").write_bytes(plistlib.dumps(manifest))

        info: dict = {"Device Name": "Test iPhone", "Product Version": "17.2"}
        if installed:
            info["Installed Applications"] = [WECHAT_BUNDLE_ID]
            applications = {}
            if wechat_version:
                metadata = plistlib.dumps({"bundleShortVersionString": wechat_version})
                applications[WECHAT_BUNDLE_ID] = {"iTunesMetadata": metadata}
            info["Applications"] = applications
        else:
            info["Installed Applications"] = ["com.apple.mobilesafari"]
            info["Applications"] = {}
        (self.root / "Info.plist").write_bytes(plistlib.dumps(info))
        return self.root


@pytest.fixture
def builder(tmp_path) -> BackupBuilder:
    return BackupBuilder(tmp_path / "backup" / "00008110-TEST")


def add_owner_account(builder: BackupBuilder, display_name: str = "Owner") -> None:
    builder.add_directory("Documents")
    builder.add_directory(OWNER_ROOT)
    data, crc = mmkv_file([("86", OWNER), ("88", display_name)])
    builder.add_file(f"Documents/MMappedKV/mmsetting.archive.{OWNER}", data)
    builder.add_file(f"Documents/MMappedKV/mmsetting.archive.{OWNER}.crc", crc)


@pytest.fixture
def wechat_backup(builder) -> BackupBuilder:
    """An account with two contacts, a group chat and messages split over two shards."""
    add_owner_account(builder)
    builder.add_contacts(
        f"{OWNER_ROOT}/DB/WCDB_Contact.sqlite",
        [
            ("wxid_alice", 3, pb_bytes(1, "Alice") + pb_bytes(3, "Ally"), None, None),
            ("wxid_bob", 3, pb_bytes(1, "Bob"), None, None),
            (
                "123@chatroom",
                2,
                None,
                None,
                pb_bytes(1, "wxid_alice;wxid_bob")
                + pb_bytes(2, "wxid_alice")
                + pb_bytes(6, '<RoomData><Member UserName="wxid_bob"><DisplayName>Bobby</DisplayName></Member></RoomData>'),
            ),
        ],
    )
    builder.add_sqlite(
        f"{OWNER_ROOT}/session/session.db",
        "CREATE TABLE SessionAbstract (UsrName TEXT, CreateTime INTEGER, ConStrRes1 TEXT);",
        {"SessionAbstract": [("wxid_alice", 1700000300, ""), ("123@chatroom", 1700000100, "")]},
    )
    builder.add_message_db(
        f"{OWNER_ROOT}/DB/message_1.sqlite",
        {
            "wxid_alice": [
                (1700000000, "hello", 1, 1, 1),
                (1700000200, "third", 1, 1, 3),
            ],
            "123@chatroom": [
                (1700000050, "wxid_bob:\nhi all", 1, 1, 1),
            ],
        },
    )
    builder.add_message_db(
        f"{OWNER_ROOT}/DB/message_2.sqlite",
        {
            "wxid_alice": [
                (1700000100, "second", 0, 1, 2),
            ],
        },
    )
    return builder
