from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator
from xml.etree import ElementTree as ET

from .base import columns_subset, md5_hex, sqlite_connection, table_exists
from .protobuf import ProtobufError, get_string, parse_fields

logger = logging.getLogger(__name__)

CHATROOM_SUFFIX = "@chatroom"
CHATROOM_NAME_MEMBERS = 3


@dataclass(slots=True)
class Profile:
    usr_name: str = ""
    display_name: str = ""
    remark: str = ""
    alias: str = ""
    portrait: str = ""
    portrait_hd: str = ""
    hash: str = ""
    owner: str = ""
    members: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.hash and self.usr_name:
            self.hash = md5_hex(self.usr_name)

    @property
    def is_chatroom(self) -> bool:
        return self.usr_name.endswith(CHATROOM_SUFFIX)

    @property
    def name(self) -> str:
        return self.remark or self.display_name or self.alias or self.usr_name

    @property
    def best_portrait(self) -> str:
        return self.portrait_hd or self.portrait


class ContactBook(Mapping[str, Profile]):
    """Read-only lookup of profiles by user name and by user-name hash."""

    def __init__(self, profiles: Iterable[Profile] = ()):
        self._by_name: dict[str, Profile] = {}
        self._by_hash: dict[str, Profile] = {}
        for profile in profiles:
            if not profile.usr_name or profile.usr_name in self._by_name:
                continue
            self._by_name[profile.usr_name] = profile
            self._by_hash[profile.hash] = profile

    def __getitem__(self, usr_name: str) -> Profile:
        return self._by_name[usr_name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_name)

    def __len__(self) -> int:
        return len(self._by_name)

    def by_hash(self, usr_name_hash: str) -> Profile | None:
        return self._by_hash.get(usr_name_hash)

    def name_of(self, usr_name: str) -> str:
        profile = self._by_name.get(usr_name)
        return profile.name if profile else usr_name

    def with_profile(self, profile: Profile) -> "ContactBook":
        """Return a new book that also contains ``profile`` (used for the account owner)."""
        return ContactBook([profile, *self._by_name.values()])


def parse_contacts(db_path: Path, *, detailed: bool = True) -> ContactBook:
    """Read the ``Friend`` table of ``WCDB_Contact.sqlite`` or the legacy ``MM.sqlite``."""
    if not db_path.exists():
        return ContactBook()

    with sqlite_connection(db_path) as conn:
        if not table_exists(conn, "Friend"):
            return ContactBook()
        wcdb_columns = columns_subset(
            conn, "Friend", ["userName", "type", "dbContactRemark", "dbContactHeadImage", "dbContactChatRoom"]
        )
        if "userName" in wcdb_columns:
            profiles = _load_wcdb_friends(conn, wcdb_columns, detailed)
        else:
            profiles = _load_legacy_friends(conn)

    _name_anonymous_chatrooms(profiles)
    logger.info("Loaded %d contacts from %s", len(profiles), db_path.name)
    return ContactBook(profiles)


def _load_wcdb_friends(conn, columns: list[str], detailed: bool) -> list[Profile]:
    rows = conn.execute(f"SELECT {', '.join(columns)} FROM Friend").fetchall()
    profiles: list[Profile] = []
    for row in rows:
        data = dict(row)
        usr_name = data.get("userName")
        if not usr_name:
            continue
        profile = Profile(usr_name=usr_name)
        _apply_blob(profile, data.get("dbContactRemark"), parse_remark)
        if detailed:
            _apply_blob(profile, data.get("dbContactHeadImage"), parse_avatar)
            if profile.is_chatroom:
                _apply_blob(profile, data.get("dbContactChatRoom"), parse_chatroom)
        profiles.append(profile)
    return profiles


def _load_legacy_friends(conn) -> list[Profile]:
    columns = columns_subset(conn, "Friend", ["UsrName", "NickName", "ConRemark", "Alias"])
    if "UsrName" not in columns:
        return []
    rows = conn.execute(f"SELECT {', '.join(columns)} FROM Friend").fetchall()
    profiles: list[Profile] = []
    for row in rows:
        data = dict(row)
        if not data.get("UsrName"):
            continue
        profiles.append(
            Profile(
                usr_name=data["UsrName"],
                display_name=data.get("NickName") or "",
                remark=data.get("ConRemark") or "",
                alias=data.get("Alias") or "",
            )
        )
    return profiles


def _apply_blob(profile: Profile, blob, parser) -> None:
    if not blob:
        return
    if isinstance(blob, str):
        blob = blob.encode("utf-8")
    try:
        parser(blob, profile)
    except (ProtobufError, ET.ParseError) as exc:
        logger.debug("Ignoring unreadable %s for %s: %s", parser.__name__, profile.usr_name, exc)


def parse_remark(blob: bytes, profile: Profile) -> None:
    fields = parse_fields(blob)
    profile.display_name = get_string(fields, 1) or profile.display_name
    profile.alias = get_string(fields, 2) or profile.alias
    profile.remark = get_string(fields, 3) or profile.remark


def parse_avatar(blob: bytes, profile: Profile) -> None:
    fields = parse_fields(blob)
    profile.portrait = get_string(fields, 2) or profile.portrait
    profile.portrait_hd = get_string(fields, 3) or profile.portrait_hd


def parse_chatroom(blob: bytes, profile: Profile) -> None:
    fields = parse_fields(blob)
    member_list = get_string(fields, 1)
    for member in member_list.replace(",", ";").split(";"):
        member = member.strip()
        if member:
            profile.members.setdefault(member, "")
    profile.owner = get_string(fields, 2)
    room_data = get_string(fields, 6)
    if room_data:
        root = ET.fromstring(room_data)
        for element in root.iter("Member"):
            member = element.get("UserName")
            if not member:
                continue
            profile.members[member] = (element.findtext("DisplayName") or "").strip()


def _name_anonymous_chatrooms(profiles: list[Profile]) -> None:
    names = {profile.usr_name: profile.name for profile in profiles}
    for profile in profiles:
        if not profile.is_chatroom or profile.remark or profile.display_name:
            continue
        members = list(profile.members.items())[:CHATROOM_NAME_MEMBERS]
        member_names = [alias or names.get(member, member) for member, alias in members]
        if member_names:
            profile.display_name = "、".join(member_names)
