"""Wire codec for resource group tags attached to storage-side records."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

_VARINT = 0
_FIXED64 = 1
_LENGTH_DELIMITED = 2
_FIXED32 = 5
_UINT64_MASK = (1 << 64) - 1


class TagLabel(IntEnum):
    UNKNOWN = 0
    ROW = 1
    INDEX = 2


class DecodeError(ValueError):
    """Raised when a resource group tag is not well formed."""


@dataclass
class ResourceGroupTag:
    sql_digest: bytes = b""
    plan_digest: bytes = b""
    label: TagLabel | int | None = None


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if shift >= 64:
            raise DecodeError("integer overflow")
        if pos >= len(data):
            raise DecodeError("unexpected end of data")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if byte < 0x80:
            return result & _UINT64_MASK, pos
        shift += 7


def _read_bytes(data: bytes, pos: int) -> tuple[bytes, int]:
    length, pos = _read_varint(data, pos)
    end = pos + length
    if end > len(data):
        raise DecodeError("unexpected end of data")
    return data[pos:end], end


def _skip(data: bytes, pos: int, wire_type: int) -> int:
    if wire_type == _VARINT:
        return _read_varint(data, pos)[1]
    if wire_type == _LENGTH_DELIMITED:
        return _read_bytes(data, pos)[1]
    width = {_FIXED64: 8, _FIXED32: 4}.get(wire_type)
    if width is None:
        raise DecodeError(f"illegal wire type {wire_type}")
    if pos + width > len(data):
        raise DecodeError("unexpected end of data")
    return pos + width


def _to_label(raw: int) -> TagLabel | int:
    value = raw & 0xFFFFFFFF
    if value >= 1 << 31:
        value -= 1 << 32
    try:
        return TagLabel(value)
    except ValueError:
        return value


def decode_resource_group_tag(data: bytes) -> ResourceGroupTag:
    """Parse a serialized resource group tag; unknown fields are skipped."""
    data = bytes(data or b"")
    tag = ResourceGroupTag()
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 0x7
        if number <= 0:
            raise DecodeError(f"illegal field number {number}")
        if number in (1, 2):
            if wire_type != _LENGTH_DELIMITED:
                raise DecodeError(f"wrong wire type {wire_type} for field {number}")
            value, pos = _read_bytes(data, pos)
            if number == 1:
                tag.sql_digest = value
            else:
                tag.plan_digest = value
        elif number == 3:
            if wire_type != _VARINT:
                raise DecodeError(f"wrong wire type {wire_type} for field {number}")
            raw, pos = _read_varint(data, pos)
            tag.label = _to_label(raw)
        else:
            pos = _skip(data, pos, wire_type)
    return tag


def _encode_varint(value: int) -> bytes:
    value &= _UINT64_MASK
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def encode_resource_group_tag(tag: ResourceGroupTag) -> bytes:
    """Serialize a resource group tag."""
    out = bytearray()
    for number, value in ((1, tag.sql_digest), (2, tag.plan_digest)):
        if value:
            out += _encode_varint(number << 3 | _LENGTH_DELIMITED)
            out += _encode_varint(len(value))
            out += value
    if tag.label is not None:
        out += _encode_varint(3 << 3 | _VARINT)
        out += _encode_varint(int(tag.label))
    return bytes(out)