"""Ethernet addressing and frame building/parsing helpers for drivers."""

from __future__ import annotations

import logging
import re
import struct
from typing import Callable

from tinynet.net import DeviceFlag, DeviceType, NetDevice, NetError
from tinynet.util import hexdump

logger = logging.getLogger(__name__)

ETHER_ADDR_LEN = 6
ETHER_ADDR_STR_LEN = 18

ETHER_HDR_SIZE = 14
ETHER_FRAME_SIZE_MIN = 60
ETHER_FRAME_SIZE_MAX = 1514
ETHER_PAYLOAD_SIZE_MIN = ETHER_FRAME_SIZE_MIN - ETHER_HDR_SIZE
ETHER_PAYLOAD_SIZE_MAX = ETHER_FRAME_SIZE_MAX - ETHER_HDR_SIZE

ETHER_TYPE_IP = 0x0800
ETHER_TYPE_ARP = 0x0806
ETHER_TYPE_IPV6 = 0x86DD

ETHER_ADDR_ANY = bytes(ETHER_ADDR_LEN)
ETHER_ADDR_BROADCAST = b"\xff" * ETHER_ADDR_LEN

_HDR = struct.Struct("!6s6sH")
_OCTET = re.compile(r"\s*[+-]?(?:0[xX])?[0-9A-Fa-f]+")


def ether_addr_pton(text: str) -> bytes:
    """Parse ``xx:xx:xx:xx:xx:xx`` into six bytes; raise ValueError if malformed."""
    if not isinstance(text, str):
        raise ValueError(f"invalid ethernet address: {text!r}")
    parts = text.split(":")
    if len(parts) != ETHER_ADDR_LEN:
        raise ValueError(f"invalid ethernet address: {text!r}")
    octets = []
    for part in parts:
        if not _OCTET.fullmatch(part):
            raise ValueError(f"invalid ethernet address: {text!r}")
        value = int(part.strip(), 16)
        if not 0 <= value <= 0xFF:
            raise ValueError(f"invalid ethernet address: {text!r}")
        octets.append(value)
    return bytes(octets)


def ether_addr_ntop(addr: bytes) -> str:
    """Format the first six bytes of ``addr`` as ``xx:xx:xx:xx:xx:xx``."""
    return ":".join(f"{byte:02x}" for byte in bytes(addr)[:ETHER_ADDR_LEN])


def ether_type_ntoa(type_: int) -> str:
    """Name of an EtherType given in host order."""
    return {
        ETHER_TYPE_IP: "IP",
        ETHER_TYPE_ARP: "ARP",
        ETHER_TYPE_IPV6: "IPv6",
    }.get(type_, "UNKNOWN")


def _dump(frame: bytes) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    dst, src, type_ = _HDR.unpack_from(frame)
    logger.debug(
        "\n        src: %s\n        dst: %s\n       type: 0x%04x (%s)\n%s",
        ether_addr_ntop(src), ether_addr_ntop(dst), type_, ether_type_ntoa(type_),
        hexdump(frame),
    )


def ether_transmit_helper(
    dev: NetDevice,
    type_: int,
    data: bytes,
    dst: bytes,
    write: Callable[[NetDevice, bytes], int],
) -> None:
    """Build a frame around ``data`` (padded to the minimum size) and hand it to ``write``.

    ``write(dev, frame)`` returns the number of bytes written; a short write
    raises NetError.
    """
    data = bytes(data)
    pad = bytes(max(0, ETHER_PAYLOAD_SIZE_MIN - len(data)))
    frame = _HDR.pack(bytes(dst)[:ETHER_ADDR_LEN], bytes(dev.addr)[:ETHER_ADDR_LEN], type_) + data + pad
    logger.debug("dev=%s, type=%s(0x%04x), len=%d", dev.name, ether_type_ntoa(type_), type_, len(frame))
    _dump(frame)
    written = write(dev, frame)
    if written != len(frame):
        raise NetError(f"write failure, dev={dev.name}, len={len(frame)}, written={written}")


def ether_poll_helper(dev: NetDevice, read: Callable[[NetDevice, int], bytes | None]) -> bool:
    """Read one frame with ``read(dev, size)`` and pass its payload to the stack.

    Returns False when the frame is addressed to another host.
    """
    frame = read(dev, ETHER_FRAME_SIZE_MAX)
    if not frame or len(frame) < ETHER_HDR_SIZE:
        raise NetError("input data is too short")
    frame = bytes(frame)
    dst, _src, type_ = _HDR.unpack_from(frame)
    if dst != bytes(dev.addr)[:ETHER_ADDR_LEN] and dst != ETHER_ADDR_BROADCAST:
        return False
    if dev.stack is None:
        raise NetError(f"device is not registered, dev={dev.name}")
    logger.debug("dev=%s, type=%s(0x%04x), len=%d", dev.name, ether_type_ntoa(type_), type_, len(frame))
    _dump(frame)
    dev.stack.input_handler(type_, frame[ETHER_HDR_SIZE:], dev)
    return True


def ether_setup_helper(dev: NetDevice) -> None:
    """Configure ``dev`` as an Ethernet device."""
    dev.type = DeviceType.ETHERNET
    dev.mtu = ETHER_PAYLOAD_SIZE_MAX
    dev.flags = DeviceFlag.BROADCAST | DeviceFlag.NEED_ARP
    dev.hlen = ETHER_HDR_SIZE
    dev.alen = ETHER_ADDR_LEN
    dev.broadcast = ETHER_ADDR_BROADCAST