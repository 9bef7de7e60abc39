from __future__ import annotations

import heapq
import html
import logging
import re
import sqlite3
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Protocol, Tuple
from xml.etree import ElementTree as ET

from core.backupfs import BackupFileCopier, BackupIndex
from core.config import ExportOptions
from core.services.downloader import Downloader, NullDownloader

from .accounts import user_root
from .base import format_display_time, md5_hex, sqlite_connection
from .contacts import ContactBook, Profile
from .message_xml import (
    AppMessage,
    RecordInfo,
    RecordItem,
    parse_app_message,
    parse_card,
    parse_emoji,
    parse_location,
    parse_record_info,
    parse_voice_length,
    system_text,
)
from .sessions import Session

logger = logging.getLogger(__name__)

MSG_TEXT = 1
MSG_IMAGE = 3
MSG_AUDIO = 34
MSG_FRIEND_VERIFY = 37
MSG_POSSIBLE_FRIEND = 40
MSG_CARD = 42
MSG_VIDEO = 43
MSG_EMOJI = 47
MSG_LOCATION = 48
MSG_APP = 49
MSG_VOIP = 50
MSG_SHORT_VIDEO = 62
MSG_VOIP_NOTIFY = 64
MSG_SYSTEM = 10000
MSG_REVOKE = 10002

APP_URL = 5
APP_ATTACH = 6
APP_EMOJI = 8
APP_FORWARDED = 19
APP_QUOTE = 57
APP_TRANSFER = 2000
APP_RED_PACKET = 2001

RECORD_TEXT = 1
RECORD_IMAGE = 2
RECORD_AUDIO = 3
RECORD_VIDEO = 4
RECORD_LINK = 5
RECORD_LOCATION = 6
RECORD_FILE = 8
RECORD_NESTED = 17

SILK_HEADER = b"#!SILK_V3"
_UNSAFE_NAME = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    STICKER = "sticker"
    FILE = "file"
    CARD = "card"
    LINK = "link"
    SYSTEM = "system"
    FORWARDED = "forwarded"


_PLAIN_KINDS = {
    MSG_TEXT: MessageKind.TEXT,
    MSG_IMAGE: MessageKind.IMAGE,
    MSG_AUDIO: MessageKind.AUDIO,
    MSG_CARD: MessageKind.CARD,
    MSG_VIDEO: MessageKind.VIDEO,
    MSG_SHORT_VIDEO: MessageKind.VIDEO,
    MSG_EMOJI: MessageKind.STICKER,
    MSG_LOCATION: MessageKind.TEXT,
}

_APP_KINDS = {
    APP_URL: MessageKind.LINK,
    APP_ATTACH: MessageKind.FILE,
    APP_EMOJI: MessageKind.STICKER,
    APP_FORWARDED: MessageKind.FORWARDED,
    APP_QUOTE: MessageKind.TEXT,
    APP_TRANSFER: MessageKind.TEXT,
    APP_RED_PACKET: MessageKind.TEXT,
}

_RECORD_KINDS = {
    RECORD_TEXT: MessageKind.TEXT,
    RECORD_IMAGE: MessageKind.IMAGE,
    RECORD_AUDIO: MessageKind.AUDIO,
    RECORD_VIDEO: MessageKind.VIDEO,
    RECORD_LINK: MessageKind.LINK,
    RECORD_LOCATION: MessageKind.TEXT,
    RECORD_FILE: MessageKind.FILE,
    RECORD_NESTED: MessageKind.FORWARDED,
}

DESCRIPTIONS = {
    MessageKind.IMAGE: "[Photo]",
    MessageKind.AUDIO: "[Audio]",
    MessageKind.VIDEO: "[Video]",
    MessageKind.STICKER: "[Sticker]",
    MessageKind.FILE: "[File]",
    MessageKind.CARD: "[Contact Card]",
    MessageKind.LINK: "[Link]",
    MessageKind.FORWARDED: "[Chat History]",
}


def classify(msg_type: int, app_type: int | None = None) -> MessageKind:
    if msg_type == MSG_APP:
        return _APP_KINDS.get(app_type or 0, MessageKind.LINK)
    return _PLAIN_KINDS.get(msg_type, MessageKind.SYSTEM)


def safe_file_name(name: str, fallback: str = "unnamed") -> str:
    cleaned = _UNSAFE_NAME.sub("_", name).strip(" .")
    return cleaned or fallback


def session_file_stem(session: Session) -> str:
    """File-name stem for a session's outputs, unique per chat table."""
    return f"{safe_file_name(session.name, session.hash)}_{session.hash[:8]}"


@dataclass(slots=True)
class MessageRecord:
    create_time: int
    message: str
    des: int
    type: int
    msg_id: int

    @property
    def is_outgoing(self) -> bool:
        return self.des == 0


@dataclass(slots=True)
class NormalizedMessage:
    name: str
    kind: MessageKind
    values: dict[str, str] = field(default_factory=dict)
    nested: list["NormalizedMessage"] = field(default_factory=list)

    def __getitem__(self, key: str) -> str:
        return self.values[key]

    def get(self, key: str, default: str = "") -> str:
        return self.values.get(key, default)

    def to_dict(self) -> dict:
        payload = {"name": self.name, "kind": self.kind.value, "values": dict(self.values)}
        if self.nested:
            payload["nested"] = [item.to_dict() for item in self.nested]
        return payload


@dataclass(slots=True)
class SessionParseResult:
    emitted: int = 0
    skipped: int = 0
    missing_media: int = 0
    truncated: int = 0
    cancelled: bool = False


MessageSink = Callable[[List[NormalizedMessage]], bool]


class CancelFlag(Protocol):
    def is_set(self) -> bool:
        ...


@dataclass(slots=True)
class _SessionContext:
    session: Session
    root: str
    output_dir: Path
    assets_dir: Path
    portrait_dir: Path
    emoji_dir: Path
    chatroom: Optional[Profile]


def decode_row(row: Tuple) -> MessageRecord:
    create_time, message, des, msg_type, msg_id = row
    if create_time is None or msg_type is None:
        raise ValueError("row without create time or type")
    if isinstance(message, bytes):
        message = message.decode("utf-8")
    return MessageRecord(
        create_time=int(create_time),
        message=message or "",
        des=int(des or 0),
        type=int(msg_type),
        msg_id=int(msg_id or 0),
    )


class SessionParser:
    """Turn one session's message rows into render records.

    A parser owns per-task scratch state (the audio buffer and the portrait
    cache). Use one instance per worker thread.
    """

    def __init__(
        self,
        owner: Profile,
        contacts: ContactBook,
        index: BackupIndex,
        *,
        options: ExportOptions | None = None,
        downloader: Downloader | None = None,
        copier: BackupFileCopier | None = None,
        localize: Callable[[str], str] | None = None,
        cancel_event: CancelFlag | None = None,
    ):
        self.owner = owner
        self.contacts = contacts if owner.usr_name in contacts or not owner.usr_name else contacts.with_profile(owner)
        self.index = index
        self.options = options or ExportOptions()
        self.downloader = downloader or NullDownloader()
        self.copier = copier or BackupFileCopier(index)
        self.localize = localize or (lambda key: key)
        self.cancel_event = cancel_event
        self._audio_buffer = bytearray()
        self._portraits: dict[str, str] = {}

    def parse(self, session: Session, output_dir: Path | str, sink: MessageSink) -> SessionParseResult:
        result = SessionParseResult()
        ctx = self._context(session, Path(output_dir))
        with ExitStack() as stack:
            for row in self._iter_rows(session, stack):
                if self.cancel_event is not None and self.cancel_event.is_set():
                    result.cancelled = True
                    break
                try:
                    record = decode_row(row)
                    message = self._normalize(record, ctx, result)
                except (ET.ParseError, UnicodeDecodeError, ValueError, TypeError) as exc:
                    result.skipped += 1
                    logger.debug("Skipping corrupt row in %s: %s", session.table_name, exc)
                    continue
                result.emitted += 1
                if not sink([message]):
                    result.cancelled = True
                    break
        logger.info(
            "Session %s: %d emitted, %d skipped, %d missing media%s",
            session.name,
            result.emitted,
            result.skipped,
            result.missing_media,
            " (cancelled)" if result.cancelled else "",
        )
        return result

    def _context(self, session: Session, output_dir: Path) -> _SessionContext:
        assets_dir = output_dir / f"{session_file_stem(session)}_files"
        shared_dir = assets_dir if self.options.icon_in_session else output_dir
        return _SessionContext(
            session=session,
            root=user_root(self.owner),
            output_dir=output_dir,
            assets_dir=assets_dir,
            portrait_dir=shared_dir / "Portrait",
            emoji_dir=shared_dir / "Emoji",
            chatroom=self.contacts.get(session.usr_name) if session.is_chatroom else None,
        )

    def _iter_rows(self, session: Session, stack: ExitStack) -> Iterator[Tuple]:
        order = "DESC" if self.options.descending else "ASC"
        sql = (
            f"SELECT CreateTime, Message, Des, Type, MesLocalID FROM {session.table_name} "
            f"ORDER BY CreateTime {order}, MesLocalID {order}"
        )
        cursors = []
        for vpath in session.db_files:
            db_path = self.index.real_path_of(vpath)
            if db_path is None:
                continue
            try:
                conn = stack.enter_context(sqlite_connection(db_path))
                cursors.append(conn.execute(sql))
            except sqlite3.DatabaseError as exc:
                logger.warning("Cannot read %s from %s: %s", session.table_name, vpath, exc)
        return heapq.merge(
            *(_plain_rows(cursor) for cursor in cursors),
            key=lambda row: (row[0] or 0, row[4] or 0),
            reverse=self.options.descending,
        )

    # -- row normalization -------------------------------------------------

    def _normalize(self, record: MessageRecord, ctx: _SessionContext, result: SessionParseResult) -> NormalizedMessage:
        sender, body = self._split_sender(record, ctx)
        app = parse_app_message(body) if record.type == MSG_APP else None
        kind = classify(record.type, app.type if app else None)
        values = {
            "msgid": str(record.msg_id),
            "type": str(record.type),
            "time": format_display_time(record.create_time, self.options.time_format, self.options.timezone),
        }
        if kind is MessageKind.SYSTEM:
            values["message"] = self._escape(self._system_message(record, body))
            return NormalizedMessage("notice", kind, values)

        values["alignment"] = "right" if record.is_outgoing else "left"
        values["name"] = self._sender_name(sender, ctx)
        values["sender"] = sender
        profile = self.owner if sender == self.owner.usr_name else self.contacts.get(sender)
        values["avatar"] = self._portrait(ctx, sender, profile.best_portrait if profile else "")
        message = NormalizedMessage("msg", kind, values)

        if record.type == MSG_APP:
            self._fill_app(message, record, body, app, ctx, result)
        elif kind is MessageKind.IMAGE:
            self._fill_image(message, ctx, record, result)
        elif kind is MessageKind.AUDIO:
            self._fill_audio(message, ctx, record, body, result)
        elif kind is MessageKind.VIDEO:
            self._fill_video(message, ctx, record, result)
        elif kind is MessageKind.STICKER:
            info = parse_emoji(body)
            self._fill_sticker(message, ctx, info["md5"], info["cdnurl"] or info["thumburl"], record, result)
        elif kind is MessageKind.CARD:
            self._fill_card(message, ctx, body)
        elif record.type == MSG_LOCATION:
            location = parse_location(body)
            label = " ".join(part for part in (location["poiname"], location["label"]) if part)
            values["message"] = self._escape(f"{self.localize('[Location]')} {label}".strip())
            values["location_x"] = location["x"]
            values["location_y"] = location["y"]
        else:
            values["message"] = self._escape(body)
        return message

    def _split_sender(self, record: MessageRecord, ctx: _SessionContext) -> Tuple[str, str]:
        if record.is_outgoing:
            return self.owner.usr_name, record.message
        if ctx.session.is_chatroom and record.type not in (MSG_SYSTEM, MSG_REVOKE):
            head, sep, tail = record.message.partition(":\n")
            if sep and head and "<" not in head and " " not in head:
                return head, tail
        return ctx.session.usr_name, record.message

    def _sender_name(self, sender: str, ctx: _SessionContext) -> str:
        if sender == self.owner.usr_name:
            return self.owner.name
        if ctx.chatroom is not None and ctx.chatroom.members.get(sender):
            return ctx.chatroom.members[sender]
        if sender in self.contacts:
            return self.contacts[sender].name
        return sender or ctx.session.name

    def _system_message(self, record: MessageRecord, body: str) -> str:
        if record.type == MSG_VOIP:
            return self.localize("[Call]")
        if record.type in (MSG_SYSTEM, MSG_REVOKE, MSG_FRIEND_VERIFY, MSG_POSSIBLE_FRIEND, MSG_VOIP_NOTIFY):
            return system_text(body)
        return self.localize("[Unsupported message type %d]") % record.type

    def _escape(self, text: str) -> str:
        if self.options.ignore_html_escape or self.options.text_mode:
            return text
        return html.escape(text)

    def _describe(self, kind: MessageKind, detail: str = "") -> str:
        description = self.localize(DESCRIPTIONS.get(kind, ""))
        return self._escape(f"{description} {detail}".strip())

    # -- media -------------------------------------------------------------

    def _relative(self, ctx: _SessionContext, path: Path) -> str:
        return path.relative_to(ctx.output_dir).as_posix()

    def _missing(self, message: NormalizedMessage, result: SessionParseResult) -> None:
        message.values["missing"] = "1"
        result.missing_media += 1

    def _copy(self, vpath: str, destination: Path) -> bool:
        return self.copier.copy_path(vpath, destination)

    def _fetch(self, url: str, destination: Path) -> bool:
        if not url:
            return False
        return self.downloader.fetch(url, destination) is not None

    def _portrait(self, ctx: _SessionContext, key: str, url: str) -> str:
        if not url or self.options.skips_media("ignore_avatar"):
            return ""
        destination = ctx.portrait_dir / f"{safe_file_name(key, md5_hex(url))}.jpg"
        cache_key = str(destination)
        if cache_key not in self._portraits:
            fetched = self._fetch(url, destination)
            self._portraits[cache_key] = self._relative(ctx, destination) if fetched else ""
        return self._portraits[cache_key]

    def _attach_image(
        self,
        message: NormalizedMessage,
        ctx: _SessionContext,
        src: str,
        src_thumb: str,
        dest: Path,
        dest_thumb: Path,
        result: SessionParseResult,
    ) -> None:
        has_full = self._copy(src, dest)
        has_thumb = self._copy(src_thumb, dest_thumb)
        if not has_full and not has_thumb:
            self._missing(message, result)
            return
        message.values["image"] = self._relative(ctx, dest if has_full else dest_thumb)
        message.values["image_thumb"] = self._relative(ctx, dest_thumb if has_thumb else dest)

    def _fill_image(self, message, ctx, record, result) -> None:
        message.values["message"] = self._describe(MessageKind.IMAGE)
        if self.options.skips_media("ignore_image"):
            return
        src = f"{ctx.root}/Img/{ctx.session.hash}/{record.msg_id}.pic"
        self._attach_image(
            message,
            ctx,
            src,
            src + "_thum",
            ctx.assets_dir / f"{record.msg_id}.jpg",
            ctx.assets_dir / f"{record.msg_id}_thumb.jpg",
            result,
        )

    def _export_audio(self, vpath: str, destination: Path) -> bool:
        data = self.index.read_bytes(vpath)
        if data is None:
            return False
        buffer = self._audio_buffer
        buffer.clear()
        buffer.extend(data)
        # WeChat prefixes SILK streams with a single 0x02 byte
        if buffer[:1] == b"\x02" and buffer[1 : 1 + len(SILK_HEADER)] == SILK_HEADER:
            del buffer[0]
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(buffer)
        except OSError as exc:
            logger.warning("Failed to write audio %s: %s", destination, exc)
            return False
        return True

    def _fill_audio(self, message, ctx, record, body, result) -> None:
        length_ms = parse_voice_length(body)
        message.values["message"] = self._describe(MessageKind.AUDIO)
        if length_ms:
            message.values["voice_length"] = f'{max(1, round(length_ms / 1000))}"'
        if self.options.skips_media("ignore_audio"):
            return
        destination = ctx.assets_dir / f"{record.msg_id}.silk"
        if self._export_audio(f"{ctx.root}/Audio/{ctx.session.hash}/{record.msg_id}.aud", destination):
            message.values["audio"] = self._relative(ctx, destination)
        else:
            self._missing(message, result)

    def _fill_video(self, message, ctx, record, result) -> None:
        message.values["message"] = self._describe(MessageKind.VIDEO)
        if self.options.skips_media("ignore_video"):
            return
        base = f"{ctx.root}/Video/{ctx.session.hash}/{record.msg_id}"
        dest = ctx.assets_dir / f"{record.msg_id}.mp4"
        dest_thumb = ctx.assets_dir / f"{record.msg_id}_thumb.jpg"
        if self._copy(base + ".video_thum", dest_thumb):
            message.values["video_thumb"] = self._relative(ctx, dest_thumb)
        if self._copy(base + ".mp4", dest):
            message.values["video"] = self._relative(ctx, dest)
        else:
            self._missing(message, result)

    def _fill_sticker(self, message, ctx, md5: str, url: str, record, result) -> None:
        message.values["message"] = self._describe(MessageKind.STICKER)
        if self.options.skips_media("ignore_emoji"):
            return
        name = safe_file_name(md5, str(record.msg_id))
        destination = ctx.emoji_dir / f"{name}.gif"
        local = f"{ctx.root}/Emoticon/{md5}.pic" if md5 else ""
        if (local and self._copy(local, destination)) or self._fetch(url, destination):
            message.values["emoji"] = self._relative(ctx, destination)
        else:
            self._missing(message, result)

    def _fill_card(self, message, ctx, body: str) -> None:
        card = parse_card(body)
        message.values["card_name"] = self._escape(card["nickname"])
        message.values["card_id"] = card["alias"] or card["username"]
        message.values["message"] = self._describe(MessageKind.CARD, card["nickname"])
        if not self.options.skips_media("ignore_card"):
            message.values["card_avatar"] = self._portrait(ctx, card["username"], card["portrait"])

    def _fill_app(self, message, record, body, app: AppMessage, ctx, result) -> None:
        values = message.values
        if app.type == APP_FORWARDED:
            info = parse_record_info(app.record_item) if app.record_item.strip() else RecordInfo()
            values["message"] = self._escape(app.title or info.title)
            values["forwarded_desc"] = self._escape(app.des or info.desc)
            message.nested = self._normalize_items(info.items, record, ctx, result, depth=1)
        elif app.type == APP_ATTACH:
            self._fill_file(message, ctx, record, app, result)
        elif app.type == APP_EMOJI:
            self._fill_sticker(message, ctx, app.emoji_md5, app.url, record, result)
        elif app.type == APP_QUOTE:
            values["message"] = self._escape(app.title)
            values["refer_name"] = self._escape(app.refer_name)
            values["refer_message"] = self._escape(app.refer_content)
        elif app.type == APP_TRANSFER:
            values["message"] = self._escape(f"{self.localize('[Transfer]')} {app.des}".strip())
        elif app.type == APP_RED_PACKET:
            values["message"] = self._escape(f"{self.localize('[Red Packet]')} {app.title}".strip())
        else:
            self._fill_link(message, ctx, record, app, result)

    def _fill_file(self, message, ctx, record, app: AppMessage, result) -> None:
        ext = app.file_ext or Path(app.title).suffix.lstrip(".")
        message.values["file_name"] = self._escape(app.title)
        if app.total_len:
            message.values["file_size"] = str(app.total_len)
        message.values["message"] = self._describe(MessageKind.FILE, app.title)
        if self.options.skips_media("ignore_file"):
            return
        suffix = f".{ext}" if ext else ""
        destination = ctx.assets_dir / f"{record.msg_id}{suffix}"
        if self._copy(f"{ctx.root}/OpenData/{ctx.session.hash}/{record.msg_id}{suffix}", destination):
            message.values["file"] = self._relative(ctx, destination)
        else:
            self._missing(message, result)

    def _fill_link(self, message, ctx, record, app: AppMessage, result) -> None:
        values = message.values
        values["link_url"] = app.url
        values["link_title"] = self._escape(app.title)
        values["link_desc"] = self._escape(app.des)
        if app.app_name:
            values["app_name"] = self._escape(app.app_name)
        values["message"] = self._describe(MessageKind.LINK, app.title) if self.options.text_mode else self._escape(app.title)
        if self.options.skips_media("ignore_sharing"):
            return
        destination = ctx.assets_dir / f"{record.msg_id}_link.jpg"
        local = f"{ctx.root}/OpenData/{ctx.session.hash}/{record.msg_id}.pic_thum"
        if self._copy(local, destination) or self._fetch(app.thumb_url, destination):
            values["link_thumb"] = self._relative(ctx, destination)
        elif app.thumb_url:
            self._missing(message, result)

    # -- forwarded chat history ----------------------------------------------

    def _normalize_items(
        self,
        items: List[RecordItem],
        record: MessageRecord,
        ctx: _SessionContext,
        result: SessionParseResult,
        depth: int,
    ) -> List[NormalizedMessage]:
        return [
            self._normalize_item(item, position, record, ctx, result, depth) for position, item in enumerate(items)
        ]

    def _normalize_item(
        self,
        item: RecordItem,
        position: int,
        record: MessageRecord,
        ctx: _SessionContext,
        result: SessionParseResult,
        depth: int,
    ) -> NormalizedMessage:
        kind = _RECORD_KINDS.get(item.datatype, MessageKind.TEXT)
        values = {
            "dataid": item.dataid,
            "name": self._escape(item.source_name),
            "time": item.source_time
            or format_display_time(item.src_create_time, self.options.time_format, self.options.timezone),
            "avatar": self._portrait(ctx, md5_hex(item.source_head_url), item.source_head_url),
            "message": self._escape(item.datadesc or item.datatitle),
        }
        message = NormalizedMessage("fwdmsg", kind, values)
        base = f"{ctx.root}/OpenData/{ctx.session.hash}/{record.msg_id}/{item.dataid}"
        dest_dir = ctx.assets_dir / str(record.msg_id)
        name = safe_file_name(item.dataid, f"item{position}")

        if kind is MessageKind.IMAGE:
            values["message"] = self._describe(kind)
            if not self.options.skips_media("ignore_image"):
                self._attach_image(
                    message,
                    ctx,
                    f"{base}.{item.datafmt or 'jpg'}",
                    f"{base}.record_thumb",
                    dest_dir / f"{name}.jpg",
                    dest_dir / f"{name}_thumb.jpg",
                    result,
                )
        elif kind is MessageKind.VIDEO:
            values["message"] = self._describe(kind)
            if not self.options.skips_media("ignore_video"):
                destination = dest_dir / f"{name}.{item.datafmt or 'mp4'}"
                dest_thumb = dest_dir / f"{name}_thumb.jpg"
                if self._copy(f"{base}.record_thumb", dest_thumb):
                    values["video_thumb"] = self._relative(ctx, dest_thumb)
                if self._copy(f"{base}.{item.datafmt or 'mp4'}", destination):
                    values["video"] = self._relative(ctx, destination)
                else:
                    self._missing(message, result)
        elif kind is MessageKind.AUDIO:
            values["message"] = self._describe(kind)
            if not self.options.skips_media("ignore_audio"):
                destination = dest_dir / f"{name}.silk"
                if self._export_audio(f"{base}.{item.datafmt or 'aud'}", destination):
                    values["audio"] = self._relative(ctx, destination)
                else:
                    self._missing(message, result)
        elif kind is MessageKind.FILE:
            values["file_name"] = self._escape(item.datatitle)
            values["message"] = self._describe(kind, item.datatitle)
            if not self.options.skips_media("ignore_file"):
                suffix = f".{item.datafmt}" if item.datafmt else ""
                destination = dest_dir / f"{name}{suffix}"
                if self._copy(f"{base}{suffix}", destination):
                    values["file"] = self._relative(ctx, destination)
                else:
                    self._missing(message, result)
        elif kind is MessageKind.LINK:
            values["link_url"] = item.link
            values["link_title"] = self._escape(item.datatitle)
            values["link_desc"] = self._escape(item.datadesc)
            values["message"] = self._escape(item.datatitle or item.datadesc)
        elif kind is MessageKind.FORWARDED:
            if depth >= self.options.max_forward_depth:
                values["truncated"] = "1"
                values["message"] = self._describe(kind, item.datatitle)
                result.truncated += 1
            else:
                try:
                    nested = parse_record_info(item.nested) if item.nested is not None else RecordInfo()
                except ET.ParseError as exc:
                    logger.debug("Corrupt nested history %s in %s: %s", item.dataid, ctx.session.table_name, exc)
                    values["truncated"] = "1"
                    values["message"] = self._describe(kind, item.datatitle)
                    result.truncated += 1
                    return message
                values["message"] = self._escape(item.datatitle or nested.title)
                message.nested = self._normalize_items(nested.items, record, ctx, result, depth + 1)
        return message


def _plain_rows(cursor: sqlite3.Cursor) -> Iterator[Tuple]:
    for row in cursor:
        yield tuple(row)


def load_messages(parser: SessionParser, session: Session, output_dir: Path | str) -> SessionParseResult:
    """Populate ``session.messages`` on demand."""
    collected: List[NormalizedMessage] = []

    def _collect(batch: List[NormalizedMessage]) -> bool:
        collected.extend(batch)
        return True

    result = parser.parse(session, output_dir, _collect)
    session.messages = collected
    return result
