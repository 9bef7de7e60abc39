from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Tuple

from core.backupfs import BackupIndex, message_db_filter, session_cell_data_filter

from .accounts import user_root
from .base import columns_subset, md5_hex, sqlite_connection, table_exists
from .contacts import CHATROOM_SUFFIX, ContactBook, Profile
from .protobuf import ProtobufError, get_int, get_message, get_string, parse_fields

if TYPE_CHECKING:
    from .messages import NormalizedMessage

logger = logging.getLogger(__name__)

CHAT_TABLE_RE = re.compile(r"^Chat_([0-9a-f]{32})$")
LEGACY_MESSAGE_DB = "MM.sqlite"


@dataclass(slots=True)
class Session:
    usr_name: str
    hash: str
    owner: Profile
    display_name: str = ""
    portrait: str = ""
    record_count: int = 0
    last_message_time: int = 0
    cell_data_path: str = ""
    db_files: list[str] = field(default_factory=list)
    messages: list["NormalizedMessage"] | None = None

    @property
    def is_chatroom(self) -> bool:
        return self.usr_name.endswith(CHATROOM_SUFFIX)

    @property
    def name(self) -> str:
        return self.display_name or self.usr_name or self.hash

    @property
    def table_name(self) -> str:
        return f"Chat_{self.hash}"


@dataclass(slots=True)
class CellData:
    usr_name: str = ""
    display_name: str = ""
    portrait: str = ""
    last_message_time: int = 0


def parse_cell_data(blob: bytes) -> CellData:
    fields = parse_fields(blob)
    contact = get_message(fields, 1)
    last_message = get_message(fields, 2)
    return CellData(
        usr_name=get_string(contact, 1),
        display_name=get_string(contact, 4),
        portrait=get_string(contact, 14),
        last_message_time=get_int(last_message, 3),
    )


class SessionsParser:
    """Enumerate an account's conversations from cell data and message shards."""

    def __init__(
        self,
        index: BackupIndex,
        cell_data_version: str = "V7",
        detailed: bool = True,
        share_index: BackupIndex | None = None,
    ):
        self.index = index
        self.share_index = share_index
        self.cell_data_version = cell_data_version
        self.detailed = detailed

    def parse(self, owner: Profile, contacts: ContactBook) -> List[Session]:
        root = user_root(owner)
        sessions: dict[str, Session] = {}
        for session in self._parse_cell_data(root, owner):
            sessions.setdefault(session.hash, session)
        for session in self._parse_group_app_sessions(owner):
            known = sessions.get(session.hash)
            if known is None:
                sessions[session.hash] = session
            else:
                known.last_message_time = max(known.last_message_time, session.last_message_time)

        for db_path, counts in self._parse_message_dbs(root):
            for table_hash, count in counts:
                session = sessions.get(table_hash)
                if session is None:
                    session = self._session_from_contacts(table_hash, owner, contacts)
                    sessions[table_hash] = session
                session.record_count += count
                session.db_files.append(db_path)

        for session in sessions.values():
            contact = contacts.get(session.usr_name) if session.usr_name else contacts.by_hash(session.hash)
            if contact is not None:
                session.display_name = contact.name or session.display_name
                session.portrait = session.portrait or contact.best_portrait

        ordered = sorted(sessions.values(), key=lambda item: (-item.last_message_time, item.usr_name, item.hash))
        logger.info("Found %d sessions for %s", len(ordered), owner.usr_name or owner.hash)
        return ordered

    def _session_from_contacts(self, table_hash: str, owner: Profile, contacts: ContactBook) -> Session:
        contact = contacts.by_hash(table_hash)
        if contact is None:
            return Session(
                usr_name="",
                hash=table_hash,
                owner=owner,
                display_name=f"Unknown ({table_hash[:8]})",
            )
        return Session(usr_name=contact.usr_name, hash=table_hash, owner=owner, display_name=contact.name)

    def _parse_cell_data(self, root: str, owner: Profile) -> List[Session]:
        sessions: List[Session] = []
        db_path = self.index.real_path_of(f"{root}/session/session.db")
        if db_path is not None:
            try:
                rows = self._read_session_abstract(db_path)
            except sqlite3.DatabaseError as exc:
                logger.warning("Unreadable session.db for %s: %s", root, exc)
                rows = []
            for usr_name, create_time, cell_base in rows:
                session = Session(usr_name=usr_name, hash=md5_hex(usr_name), owner=owner, last_message_time=create_time)
                if cell_base and self.detailed:
                    self._apply_cell_data(session, f"{root}/{cell_base.lstrip('/')}")
                sessions.append(session)
            return sessions

        cell_filter = session_cell_data_filter(f"{root}/session/data/", self.cell_data_version)
        for entry in self.index.select(cell_filter):
            cell = self._read_cell_data(entry.relative_path)
            if cell is None or not cell.usr_name:
                continue
            sessions.append(
                Session(
                    usr_name=cell.usr_name,
                    hash=md5_hex(cell.usr_name),
                    owner=owner,
                    display_name=cell.display_name,
                    portrait=cell.portrait,
                    last_message_time=cell.last_message_time,
                    cell_data_path=entry.relative_path,
                )
            )
        return sessions

    def _parse_group_app_sessions(self, owner: Profile) -> List[Session]:
        """Sessions listed by the app-group container (widgets and extensions)."""
        if self.share_index is None:
            return []
        db_path = self.share_index.real_path_of(f"share/{owner.hash}/session/session.db")
        if db_path is None:
            return []
        try:
            rows = self._read_session_abstract(db_path)
        except sqlite3.DatabaseError as exc:
            logger.warning("Unreadable group session.db for %s: %s", owner.usr_name or owner.hash, exc)
            return []
        return [
            Session(usr_name=usr_name, hash=md5_hex(usr_name), owner=owner, last_message_time=create_time)
            for usr_name, create_time, _ in rows
        ]

    @staticmethod
    def _read_session_abstract(db_path) -> List[Tuple[str, int, str]]:
        with sqlite_connection(db_path) as conn:
            if not table_exists(conn, "SessionAbstract"):
                return []
            columns = columns_subset(conn, "SessionAbstract", ["UsrName", "CreateTime", "ConStrRes1"])
            if "UsrName" not in columns:
                return []
            rows = conn.execute(f"SELECT {', '.join(columns)} FROM SessionAbstract").fetchall()
        result = []
        for row in rows:
            data = dict(row)
            if not data.get("UsrName"):
                continue
            result.append((data["UsrName"], int(data.get("CreateTime") or 0), data.get("ConStrRes1") or ""))
        return result

    def _apply_cell_data(self, session: Session, cell_base: str) -> None:
        matches = self.index.select(session_cell_data_filter(cell_base, self.cell_data_version))
        if not matches:
            return
        cell = self._read_cell_data(matches[0].relative_path)
        if cell is None:
            return
        session.cell_data_path = matches[0].relative_path
        session.display_name = cell.display_name or session.display_name
        session.portrait = cell.portrait or session.portrait
        session.last_message_time = max(session.last_message_time, cell.last_message_time)

    def _read_cell_data(self, relative_path: str) -> CellData | None:
        blob = self.index.read_bytes(relative_path)
        if not blob:
            return None
        try:
            return parse_cell_data(blob)
        except ProtobufError as exc:
            logger.debug("Corrupt cell data %s: %s", relative_path, exc)
            return None

    def message_db_paths(self, root: str) -> List[str]:
        paths = [entry.relative_path for entry in self.index.select(message_db_filter(root))]
        legacy = f"{root}/DB/{LEGACY_MESSAGE_DB}"
        if legacy in self.index:
            paths.append(legacy)
        return paths

    def _parse_message_dbs(self, root: str) -> List[Tuple[str, List[Tuple[str, int]]]]:
        result = []
        for vpath in self.message_db_paths(root):
            db_path = self.index.real_path_of(vpath)
            if db_path is None:
                continue
            try:
                counts = self._parse_message_db(db_path)
            except sqlite3.DatabaseError as exc:
                logger.warning("Skipping unreadable message db %s: %s", vpath, exc)
                continue
            result.append((vpath, counts))
        return result

    @staticmethod
    def _parse_message_db(db_path) -> List[Tuple[str, int]]:
        counts: List[Tuple[str, int]] = []
        with sqlite_connection(db_path) as conn:
            names = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name LIKE 'Chat\\_%' ESCAPE '\\'"
            ).fetchall()
            for (name,) in names:
                match = CHAT_TABLE_RE.match(name)
                if not match:
                    continue
                (count,) = conn.execute(f"SELECT COUNT(*) FROM {name}").fetchone()
                if count:
                    counts.append((match.group(1), int(count)))
        return counts
