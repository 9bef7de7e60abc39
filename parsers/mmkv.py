"""Decoders for the account settings archives.

Recent WeChat builds keep the logged-in account's settings in an MMKV file
(``Documents/MMappedKV/mmsetting.archive.<uid>``) with a sibling ``.crc``
file. Older builds wrote an NSKeyedArchiver plist to
``Documents/<hash>/mmsetting.archive``.
"""
from __future__ import annotations

import logging
import plistlib
import struct
import zlib

from .contacts import Profile
from .protobuf import ProtobufError, read_length_delimited, read_varint

logger = logging.getLogger(__name__)

KEY_USR_NAME = "86"
KEY_DISPLAY_NAME = "88"
KEY_PORTRAIT = "headimgurl"
KEY_PORTRAIT_HD = "headhdimgurl"

_LEGACY_FIELDS = {
    "UsrName": "usr_name",
    "NickName": "display_name",
    "AliasName": "alias",
    KEY_PORTRAIT: "portrait",
    KEY_PORTRAIT_HD: "portrait_hd",
}


class MMKVFormatError(ValueError):
    """Raised when an MMKV file is truncated or structurally invalid."""


def _payload(data: bytes) -> bytes:
    if len(data) < 4:
        raise MMKVFormatError("missing size header")
    (actual_size,) = struct.unpack_from("<I", data, 0)
    if actual_size > len(data) - 4:
        raise MMKVFormatError(f"declared size {actual_size} exceeds file length {len(data) - 4}")
    return data[4 : 4 + actual_size]


def verify_crc(data: bytes, crc_data: bytes) -> bool:
    if len(crc_data) < 4:
        return False
    try:
        payload = _payload(data)
    except MMKVFormatError:
        return False
    (expected,) = struct.unpack_from("<I", crc_data, 0)
    return (zlib.crc32(payload) & 0xFFFFFFFF) == expected


def decode_mmkv(data: bytes) -> dict[str, bytes]:
    payload = _payload(data)
    values: dict[str, bytes] = {}
    if not payload:
        return values
    try:
        _, pos = read_varint(payload, 0)  # item size holder
        while pos < len(payload):
            raw_key, pos = read_length_delimited(payload, pos)
            value, pos = read_length_delimited(payload, pos)
            key = raw_key.decode("utf-8")
            if value:
                values[key] = value
            else:
                values.pop(key, None)
    except (ProtobufError, UnicodeDecodeError) as exc:
        raise MMKVFormatError(str(exc)) from exc
    return values


def decode_mmkv_string(value: bytes) -> str:
    try:
        text, end = read_length_delimited(value, 0)
    except ProtobufError as exc:
        raise MMKVFormatError(str(exc)) from exc
    if end != len(value):
        raise MMKVFormatError("trailing bytes after string value")
    return text.decode("utf-8", errors="replace")


def parse_mmkv_profile(data: bytes, crc_data: bytes) -> Profile | None:
    """Return the archived account profile, or ``None`` if the archive cannot be trusted."""
    if not verify_crc(data, crc_data):
        logger.warning("MMKV checksum mismatch; ignoring settings archive")
        return None
    try:
        values = decode_mmkv(data)
        strings = {
            key: decode_mmkv_string(values[key])
            for key in (KEY_USR_NAME, KEY_DISPLAY_NAME, KEY_PORTRAIT, KEY_PORTRAIT_HD)
            if key in values
        }
    except MMKVFormatError as exc:
        logger.warning("Corrupt MMKV settings archive: %s", exc)
        return None
    usr_name = strings.get(KEY_USR_NAME, "")
    if not usr_name:
        return None
    return Profile(
        usr_name=usr_name,
        display_name=strings.get(KEY_DISPLAY_NAME, ""),
        portrait=strings.get(KEY_PORTRAIT, ""),
        portrait_hd=strings.get(KEY_PORTRAIT_HD, ""),
    )


def parse_mmsetting_archive(data: bytes) -> Profile | None:
    try:
        archive = plistlib.loads(data)
    except (plistlib.InvalidFileException, ValueError) as exc:
        logger.warning("Unreadable mmsetting.archive: %s", exc)
        return None
    objects = archive.get("$objects") if isinstance(archive, dict) else None
    if not isinstance(objects, list):
        return None

    def resolve(value):
        if isinstance(value, plistlib.UID) and value.data < len(objects):
            return objects[value.data]
        return value

    root = resolve((archive.get("$top") or {}).get("root"))
    if not isinstance(root, dict):
        return None

    flat: dict[str, object] = {key: resolve(value) for key, value in root.items()}
    nested = flat.get("new_dicsetting")
    if isinstance(nested, dict) and "NS.keys" in nested:
        keys = [resolve(k) for k in nested.get("NS.keys", [])]
        vals = [resolve(v) for v in nested.get("NS.objects", [])]
        for key, value in zip(keys, vals):
            flat.setdefault(str(key), value)

    attrs = {attr: flat[key] for key, attr in _LEGACY_FIELDS.items() if isinstance(flat.get(key), str)}
    if not attrs.get("usr_name"):
        return None
    return Profile(**attrs)
