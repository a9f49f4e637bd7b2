"""Byte-level helpers shared by the protocol modules."""

from __future__ import annotations

import struct

_BORDER = "+------+" + "-" * 49 + "+" + "-" * 18 + "+"


def cksum16(data: bytes, init: int = 0) -> int:
    """Return the Internet checksum of ``data`` as a 16-bit value in network order.

    ``init`` is added to the running sum before folding. A buffer that already
    carries its correct checksum yields 0.
    """
    data = bytes(data)
    if len(data) % 2:
        data += b"\x00"
    total = init + sum(word for (word,) in struct.iter_unpack("!H", data))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def hexdump(data: bytes) -> str:
    """Render ``data`` as a boxed table of offsets, hex bytes and printable text."""
    data = bytes(data)
    lines = [_BORDER]
    for offset in range(0, len(data), 16):
        chunk = data[offset:offset + 16]
        hex_part = " ".join(f"{byte:02x}" for byte in chunk)
        text = "".join(chr(byte) if 0x20 <= byte < 0x7F else "." for byte in chunk)
        lines.append(f"| {offset:04x} | {hex_part:<47} | {text:<16} |")
    lines.append(_BORDER)
    return "\n".join(lines)