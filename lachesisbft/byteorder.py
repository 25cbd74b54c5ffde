"""Fixed-width unsigned integer encoding in big- or little-endian byte order."""

from __future__ import annotations

import enum


class ByteOrder(str, enum.Enum):
    """Byte order of an encoded integer."""

    BIG = "big"
    LITTLE = "little"


def _encode(n: int, width: int, order: ByteOrder | str) -> bytes:
    if not 0 <= n < 1 << (8 * width):
        raise ValueError(f"{n} does not fit in {8 * width} unsigned bits")
    return n.to_bytes(width, ByteOrder(order).value)


def _decode(data: bytes, width: int, order: ByteOrder | str) -> int:
    if len(data) < width:
        raise ValueError(f"need at least {width} bytes, got {len(data)}")
    return int.from_bytes(bytes(data[:width]), ByteOrder(order).value)


def uint64_to_bytes(n: int, order: ByteOrder | str = ByteOrder.BIG) -> bytes:
    """Encode an unsigned 64-bit integer as 8 bytes."""
    return _encode(n, 8, order)


def bytes_to_uint64(data: bytes, order: ByteOrder | str = ByteOrder.BIG) -> int:
    """Decode an unsigned 64-bit integer from the first 8 bytes."""
    return _decode(data, 8, order)


def uint32_to_bytes(n: int, order: ByteOrder | str = ByteOrder.BIG) -> bytes:
    """Encode an unsigned 32-bit integer as 4 bytes."""
    return _encode(n, 4, order)


def bytes_to_uint32(data: bytes, order: ByteOrder | str = ByteOrder.BIG) -> int:
    """Decode an unsigned 32-bit integer from the first 4 bytes."""
    return _decode(data, 4, order)


def uint16_to_bytes(n: int, order: ByteOrder | str = ByteOrder.BIG) -> bytes:
    """Encode an unsigned 16-bit integer as 2 bytes."""
    return _encode(n, 2, order)


def bytes_to_uint16(data: bytes, order: ByteOrder | str = ByteOrder.BIG) -> int:
    """Decode an unsigned 16-bit integer from the first 2 bytes."""
    return _decode(data, 2, order)