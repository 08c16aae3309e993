"""Fixed-width integer and bit extraction from console memory snapshots.

Every function here is pure. Multi-byte values use the console-memory
protocol's byte order, little-endian, unless a caller asks otherwise.
"""

from __future__ import annotations

from typing import Literal

ByteOrder = Literal["little", "big"]

PROTOCOL_BYTE_ORDER: ByteOrder = "little"

FIELD_WIDTHS: dict[str, int] = {
    "u8": 1,
    "u16": 2,
    "u24": 3,
    "u32": 4,
}


class RangeError(IndexError):
    """Raised when a decode would read past the end of a snapshot."""


def field_width(value_type: str) -> int:
    width = FIELD_WIDTHS.get(str(value_type).strip().lower())
    if width is None:
        raise ValueError(
            f"Unsupported field type '{value_type}'. Supported: {'|'.join(FIELD_WIDTHS)}."
        )
    return width


def get_uint(buffer: bytes, offset: int, width: int, byteorder: ByteOrder = PROTOCOL_BYTE_ORDER) -> int:
    if width <= 0:
        raise ValueError(f"Field width must be positive, got {width}.")
    if offset < 0 or offset + width > len(buffer):
        raise RangeError(
            f"Read of {width} byte(s) at offset {offset} exceeds snapshot length {len(buffer)}."
        )
    return int.from_bytes(bytes(buffer[offset:offset + width]), byteorder)


def encode_uint(value: int, width: int, byteorder: ByteOrder = PROTOCOL_BYTE_ORDER) -> bytes:
    if value < 0 or value >= 1 << (8 * width):
        raise ValueError(f"Value {value} does not fit in {width} byte(s).")
    return int(value).to_bytes(width, byteorder)


def get_u8(buffer: bytes, offset: int) -> int:
    return get_uint(buffer, offset, 1)


def get_u16(buffer: bytes, offset: int) -> int:
    return get_uint(buffer, offset, 2)


def get_u24(buffer: bytes, offset: int) -> int:
    return get_uint(buffer, offset, 3)


def get_u32(buffer: bytes, offset: int) -> int:
    return get_uint(buffer, offset, 4)


def bit_set(value: int, bit: int) -> bool:
    if bit < 0:
        return False
    return (value & (1 << bit)) != 0


def bits(value: int, start: int, count: int) -> int:
    if start < 0 or count <= 0:
        return 0
    return (value >> start) & ((1 << count) - 1)
