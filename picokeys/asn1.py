"""BER-TLV encoding helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

_MAX_LENGTH = 0xFFFF


@dataclass(frozen=True)
class Tlv:
    """One tag-length-value element found while walking a buffer.

    ``offset`` is the position of the first tag byte and ``end`` the
    position just past the value, both relative to the walked buffer.
    ``length`` is the declared length; ``value`` may be shorter when the
    buffer is truncated.
    """

    tag: int
    length: int
    value: bytes
    offset: int
    end: int


def format_tlv_len(length: int) -> bytes:
    """Encode a TLV length field in its shortest BER form."""
    if length < 0 or length > _MAX_LENGTH:
        raise ValueError(f"TLV length out of range: {length}")
    if length < 0x80:
        return bytes([length])
    if length < 0x100:
        return bytes([0x81, length])
    return bytes([0x82, length >> 8, length & 0xFF])


def asn1_len_tag(tag: int, length: int) -> int:
    """Total encoded size of a TLV with the given tag and value length."""
    size = 1 + len(format_tlv_len(length)) + length
    if tag > 0x00FF:
        size += 1
    return size


def walk_tlv(data: bytes) -> Iterator[Tlv]:
    """Yield every top-level TLV element of ``data`` in order."""
    buf = bytes(data)
    size = len(buf)
    pos = 0

    def take() -> int:
        nonlocal pos
        if pos >= size:
            raise ValueError("truncated TLV header")
        byte = buf[pos]
        pos += 1
        return byte

    while pos < size:
        start = pos
        tag = take()
        if tag & 0x1F == 0x1F:
            tag = (tag << 8) | take()
        length = take()
        if length == 0x82:
            length = take() << 8
            length |= take()
        elif length == 0x81:
            length = take()
        value = buf[pos:pos + length]
        pos += length
        yield Tlv(tag=tag, length=length, value=value, offset=start, end=pos)


def find_tag(data: bytes, tag: int) -> Optional[bytes]:
    """Return the value of the first element carrying ``tag``, or None."""
    for element in walk_tlv(data):
        if element.tag == tag:
            return element.value
    return None


def get_uint(data: bytes) -> int:
    """Interpret up to the first four bytes of ``data`` as a big-endian integer."""
    if not data:
        raise ValueError("cannot read an integer from empty data")
    return int.from_bytes(bytes(data[:4]), "big")