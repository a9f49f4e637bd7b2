"""Address Resolution Protocol for IPv4 over Ethernet."""

from __future__ import annotations

import enum
import ipaddress
import logging
import struct
import threading
import time
from dataclasses import dataclass
from typing import ClassVar

from tinynet.ether import (
    ETHER_ADDR_ANY,
    ETHER_ADDR_LEN,
    ETHER_TYPE_IP,
    ether_addr_ntop,
)
from tinynet.net import DeviceType, IfaceFamily, NetError, ProtocolType
from tinynet.util import hexdump

logger = logging.getLogger(__name__)

ARP_HRD_ETHER = 0x0001
ARP_PRO_IP = ETHER_TYPE_IP

ARP_OP_REQUEST = 0x0001
ARP_OP_REPLY = 0x0002

ARP_CACHE_SIZE = 32
ARP_CACHE_TIMEOUT = 30

IP_ADDR_LEN = 4

_FORMAT = struct.Struct("!HHBBH6sI6sI")


class ArpError(Exception):
    """An ARP message or resolution request could not be handled."""


class ArpCacheState(enum.IntEnum):
    FREE = 0
    INCOMPLETE = 1
    RESOLVED = 2
    STATIC = 3


def _ip_ntop(addr: int) -> str:
    return str(ipaddress.IPv4Address(addr))


def arp_opcode_ntoa(op: int) -> str:
    return {ARP_OP_REQUEST: "Request", ARP_OP_REPLY: "Reply"}.get(op, "Unknown")


@dataclass
class ArpMessage:
    """An Ethernet/IPv4 ARP message; protocol addresses are 32-bit integers."""

    op: int
    sha: bytes
    spa: int
    tha: bytes
    tpa: int
    hrd: int = ARP_HRD_ETHER
    pro: int = ARP_PRO_IP
    hln: int = ETHER_ADDR_LEN
    pln: int = IP_ADDR_LEN

    SIZE: ClassVar[int] = _FORMAT.size

    def pack(self) -> bytes:
        return _FORMAT.pack(
            self.hrd, self.pro, self.hln, self.pln, self.op,
            bytes(self.sha)[:ETHER_ADDR_LEN], self.spa,
            bytes(self.tha)[:ETHER_ADDR_LEN], self.tpa,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "ArpMessage":
        if len(data) < cls.SIZE:
            raise ArpError("too short")
        hrd, pro, hln, pln, op, sha, spa, tha, tpa = _FORMAT.unpack_from(data)
        return cls(op, sha, spa, tha, tpa, hrd, pro, hln, pln)

    def dump(self) -> str:
        return "\n".join([
            f"        hrd: 0x{self.hrd:04x}",
            f"        pro: 0x{self.pro:04x}",
            f"        hln: {self.hln}",
            f"        pln: {self.pln}",
            f"         op: 0x{self.op:04x} ({arp_opcode_ntoa(self.op)})",
            f"        sha: {ether_addr_ntop(self.sha)}",
            f"        spa: {_ip_ntop(self.spa)}",
            f"        tha: {ether_addr_ntop(self.tha)}",
            f"        tpa: {_ip_ntop(self.tpa)}",
        ])


@dataclass(eq=False)
class _CacheEntry:
    state: ArpCacheState = ArpCacheState.FREE
    pa: int = 0
    ha: bytes = ETHER_ADDR_ANY
    timestamp: float = 0.0

    def clear(self) -> None:
        self.state = ArpCacheState.FREE
        self.pa = 0
        self.ha = ETHER_ADDR_ANY
        self.timestamp = 0.0


def _dump(msg: ArpMessage, data: bytes) -> None:
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("\n%s\n%s", msg.dump(), hexdump(data))


class Arp:
    """ARP protocol handler with a fixed-size address cache."""

    def __init__(self, stack):
        self._stack = stack
        self._lock = threading.Lock()
        self._caches = [_CacheEntry() for _ in range(ARP_CACHE_SIZE)]
        stack.register_protocol("ARP", ProtocolType.ARP, self.input)
        stack.register_timer("ARP Timer", 1.0, self.timer)

    # Cache operations; callers hold self._lock.

    def _alloc(self) -> _CacheEntry:
        for entry in self._caches:
            if entry.state == ArpCacheState.FREE:
                return entry
        return min(self._caches, key=lambda entry: entry.timestamp)

    def _select(self, pa: int) -> _CacheEntry | None:
        return next(
            (e for e in self._caches if e.state != ArpCacheState.FREE and e.pa == pa),
            None,
        )

    def _update(self, pa: int, ha: bytes) -> bool:
        entry = self._select(pa)
        if entry is None:
            return False
        entry.state = ArpCacheState.RESOLVED
        entry.ha = bytes(ha)
        entry.timestamp = time.monotonic()
        logger.debug("UPDATE: pa=%s, ha=%s", _ip_ntop(pa), ether_addr_ntop(ha))
        return True

    def _insert(self, pa: int, ha: bytes) -> None:
        entry = self._alloc()
        entry.state = ArpCacheState.RESOLVED
        entry.pa = pa
        entry.ha = bytes(ha)
        entry.timestamp = time.monotonic()
        logger.debug("INSERT: pa=%s, ha=%s", _ip_ntop(pa), ether_addr_ntop(ha))

    def _delete(self, entry: _CacheEntry) -> None:
        logger.debug("DELETE: pa=%s, ha=%s", _ip_ntop(entry.pa), ether_addr_ntop(entry.ha))
        entry.clear()

    def _send(self, iface, msg: ArpMessage, dst: bytes) -> None:
        dev = iface.dev
        data = msg.pack()
        logger.debug("dev=%s, opcode=%s(0x%04x), len=%d",
                     dev.name, arp_opcode_ntoa(msg.op), msg.op, len(data))
        _dump(msg, data)
        try:
            dev.output(ProtocolType.ARP, data, dst)
        except NetError as exc:
            logger.error("output failure, dev=%s: %s", dev.name, exc)

    def _request(self, iface, tpa: int) -> None:
        msg = ArpMessage(ARP_OP_REQUEST, iface.dev.addr, iface.unicast, ETHER_ADDR_ANY, tpa)
        self._send(iface, msg, iface.dev.broadcast)

    def _reply(self, iface, tha: bytes, tpa: int, dst: bytes) -> None:
        msg = ArpMessage(ARP_OP_REPLY, iface.dev.addr, iface.unicast, tha, tpa)
        self._send(iface, msg, dst)

    def input(self, data, dev) -> None:
        """Handle a received ARP message: learn the sender and answer requests for us."""
        msg = ArpMessage.unpack(bytes(data))
        if msg.hrd != ARP_HRD_ETHER or msg.hln != ETHER_ADDR_LEN:
            raise ArpError("unsupported hardware address")
        if msg.pro != ARP_PRO_IP or msg.pln != IP_ADDR_LEN:
            raise ArpError("unsupported protocol address")
        logger.debug("dev=%s, opcode=%s(0x%04x), len=%d",
                     dev.name, arp_opcode_ntoa(msg.op), msg.op, len(data))
        _dump(msg, bytes(data))
        with self._lock:
            merged = self._update(msg.spa, msg.sha)
        iface = dev.get_iface(IfaceFamily.IP)
        if iface is not None and iface.unicast == msg.tpa:
            if not merged:
                with self._lock:
                    self._insert(msg.spa, msg.sha)
            if msg.op == ARP_OP_REQUEST:
                self._reply(iface, msg.sha, msg.spa, msg.sha)

    def resolve(self, iface, pa: int) -> bytes | None:
        """Return the hardware address for ``pa``, or None while resolution is pending."""
        dev = iface.dev
        if dev is None or dev.type != DeviceType.ETHERNET:
            raise ArpError("unsupported hardware address type")
        if iface.family != IfaceFamily.IP:
            raise ArpError("unsupported protocol address type")
        with self._lock:
            entry = self._select(pa)
            if entry is None:
                entry = self._alloc()
                entry.state = ArpCacheState.INCOMPLETE
                entry.pa = pa
                entry.ha = ETHER_ADDR_ANY
                entry.timestamp = time.monotonic()
                self._request(iface, pa)
                logger.debug("cache not found, pa=%s", _ip_ntop(pa))
                return None
            if entry.state == ArpCacheState.INCOMPLETE:
                self._request(iface, pa)
                return None
            ha = entry.ha
        logger.debug("resolved, pa=%s, ha=%s", _ip_ntop(pa), ether_addr_ntop(ha))
        return ha

    def timer(self) -> None:
        """Drop dynamic cache entries older than the timeout."""
        with self._lock:
            now = time.monotonic()
            for entry in self._caches:
                if entry.state in (ArpCacheState.FREE, ArpCacheState.STATIC):
                    continue
                if int(now - entry.timestamp) > ARP_CACHE_TIMEOUT:
                    self._delete(entry)