"""Schema-less protobuf reader for the blobs WeChat stores in its databases."""
from __future__ import annotations

import struct
from typing import Dict, List, Union

FieldValue = Union[int, bytes]

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH_DELIMITED = 2
WIRE_FIXED32 = 5


class ProtobufError(ValueError):
    """Raised when a blob is not a well-formed protobuf message."""


def read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ProtobufError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ProtobufError("varint too long")


def read_length_delimited(data: bytes, pos: int) -> tuple[bytes, int]:
    length, pos = read_varint(data, pos)
    end = pos + length
    if end > len(data):
        raise ProtobufError("length-delimited field overruns buffer")
    return data[pos:end], end


def parse_fields(data: bytes) -> Dict[int, List[FieldValue]]:
    fields: Dict[int, List[FieldValue]] = {}
    pos = 0
    while pos < len(data):
        key, pos = read_varint(data, pos)
        number, wire_type = key >> 3, key & 0x07
        if number == 0:
            raise ProtobufError("field number 0")
        if wire_type == WIRE_VARINT:
            value, pos = read_varint(data, pos)
        elif wire_type == WIRE_LENGTH_DELIMITED:
            value, pos = read_length_delimited(data, pos)
        elif wire_type == WIRE_FIXED64:
            if pos + 8 > len(data):
                raise ProtobufError("truncated fixed64")
            (value,) = struct.unpack_from("<Q", data, pos)
            pos += 8
        elif wire_type == WIRE_FIXED32:
            if pos + 4 > len(data):
                raise ProtobufError("truncated fixed32")
            (value,) = struct.unpack_from("<I", data, pos)
            pos += 4
        else:
            raise ProtobufError(f"unsupported wire type {wire_type}")
        fields.setdefault(number, []).append(value)
    return fields


def get_bytes(fields: Dict[int, List[FieldValue]], number: int) -> bytes | None:
    for value in fields.get(number, []):
        if isinstance(value, bytes):
            return value
    return None


def get_string(fields: Dict[int, List[FieldValue]], number: int, default: str = "") -> str:
    value = get_bytes(fields, number)
    if value is None:
        return default
    return value.decode("utf-8", errors="replace")


def get_int(fields: Dict[int, List[FieldValue]], number: int, default: int = 0) -> int:
    for value in fields.get(number, []):
        if isinstance(value, int):
            return value
    return default


def get_message(fields: Dict[int, List[FieldValue]], number: int) -> Dict[int, List[FieldValue]]:
    value = get_bytes(fields, number)
    if value is None:
        return {}
    return parse_fields(value)
