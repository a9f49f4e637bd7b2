"""IPv4: addressing, interfaces, routing, input demultiplexing and output."""

from __future__ import annotations

import ipaddress
import logging
import re
import struct
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar

from tinynet.arp import ArpError
from tinynet.net import (
    NET_DEVICE_ADDR_LEN,
    DeviceFlag,
    IfaceFamily,
    NetDevice,
    NetError,
    NetIface,
    ProtocolType,
)
from tinynet.util import cksum16, hexdump

logger = logging.getLogger(__name__)

IP_VERSION_IPV4 = 4

IP_HDR_SIZE_MIN = 20
IP_HDR_SIZE_MAX = 60

IP_TOTAL_SIZE_MAX = 0xFFFF
IP_PAYLOAD_SIZE_MAX = IP_TOTAL_SIZE_MAX - IP_HDR_SIZE_MIN

IP_ADDR_LEN = 4
IP_ADDR_STR_LEN = 16
IP_ENDPOINT_STR_LEN = IP_ADDR_STR_LEN + 6

IP_PROTOCOL_ICMP = 0x01
IP_PROTOCOL_TCP = 0x06
IP_PROTOCOL_UDP = 0x11

IP_ADDR_ANY = 0x00000000
IP_ADDR_BROADCAST = 0xFFFFFFFF

_NAME_MAX = 15
_HDR = struct.Struct("!BBHHHBBHII")
_DECIMAL = re.compile(r"\s*[+-]?\d+")
_PORT_PREFIX = re.compile(r"\s*([+-]?\d+)")


class IpError(Exception):
    """An IP datagram could not be received or sent."""


def ip_addr_pton(text: str) -> int:
    """Parse dotted-quad ``text`` into a 32-bit integer; raise ValueError if malformed."""
    if not isinstance(text, str):
        raise ValueError(f"invalid IP address: {text!r}")
    parts = text.split(".")
    if len(parts) != IP_ADDR_LEN:
        raise ValueError(f"invalid IP address: {text!r}")
    value = 0
    for part in parts:
        if not _DECIMAL.fullmatch(part):
            raise ValueError(f"invalid IP address: {text!r}")
        octet = int(part.strip())
        if not 0 <= octet <= 255:
            raise ValueError(f"invalid IP address: {text!r}")
        value = (value << 8) | octet
    return value


def ip_addr_ntop(addr: int) -> str:
    """Format a 32-bit address as dotted-quad text."""
    return str(ipaddress.IPv4Address(addr & 0xFFFFFFFF))


@dataclass(frozen=True)
class IpEndpoint:
    """An IPv4 address and port."""

    addr: int
    port: int


def ip_endpoint_pton(text: str) -> IpEndpoint:
    """Parse ``a.b.c.d:port``; raise ValueError if the address or port is invalid."""
    addr_text, sep, port_text = text.rpartition(":")
    if not sep:
        raise ValueError(f"invalid endpoint: {text!r}")
    addr = ip_addr_pton(addr_text)
    match = _PORT_PREFIX.match(port_text)
    port = int(match.group(1)) if match else 0
    if not 0 < port <= 0xFFFF:
        raise ValueError(f"invalid port: {text!r}")
    return IpEndpoint(addr, port)


def ip_endpoint_ntop(endpoint: IpEndpoint) -> str:
    """Format an endpoint as ``a.b.c.d:port``."""
    return f"{ip_addr_ntop(endpoint.addr)}:{endpoint.port}"


@dataclass(eq=False)
class IpIface(NetIface):
    """An IPv4 interface with its unicast, netmask and directed broadcast addresses."""

    family: IfaceFamily = IfaceFamily.IP
    unicast: int = 0
    netmask: int = 0
    broadcast: int = 0


def ip_iface_alloc(unicast: str, netmask: str) -> IpIface:
    """Build an interface from textual addresses, deriving the broadcast address."""
    addr = ip_addr_pton(unicast)
    mask = ip_addr_pton(netmask)
    broadcast = (addr & mask) | (~mask & 0xFFFFFFFF)
    return IpIface(unicast=addr, netmask=mask, broadcast=broadcast)


@dataclass
class IpHeader:
    """The fixed 20-byte IPv4 header; addresses are 32-bit integers."""

    vhl: int = (IP_VERSION_IPV4 << 4) | (IP_HDR_SIZE_MIN >> 2)
    tos: int = 0
    total: int = IP_HDR_SIZE_MIN
    id: int = 0
    offset: int = 0
    ttl: int = 0xFF
    protocol: int = 0
    sum: int = 0
    src: int = 0
    dst: int = 0

    SIZE: ClassVar[int] = _HDR.size

    @property
    def version(self) -> int:
        return (self.vhl & 0xF0) >> 4

    @property
    def hlen(self) -> int:
        return (self.vhl & 0x0F) << 2

    def pack(self) -> bytes:
        return _HDR.pack(
            self.vhl, self.tos, self.total, self.id, self.offset,
            self.ttl, self.protocol, self.sum, self.src, self.dst,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "IpHeader":
        if len(data) < cls.SIZE:
            raise IpError("too short")
        return cls(*_HDR.unpack_from(data))


@dataclass(eq=False)
class _Protocol:
    name: str
    type: int
    handler: Callable[[bytes, int, int, IpIface], Any]


@dataclass(eq=False)
class _Route:
    network: int
    netmask: int
    nexthop: int
    iface: IpIface = field(repr=False)


class Ip:
    """IPv4 layer: interfaces, routes and upper-protocol dispatch."""

    def __init__(self, stack, arp=None):
        self._stack = stack
        self._arp = arp
        self.ifaces: list[IpIface] = []
        self._protocols: list[_Protocol] = []
        self._routes: list[_Route] = []
        self._id = 128
        self._id_lock = threading.Lock()
        stack.register_protocol("IP", ProtocolType.IP, self.input)

    def _dump(self, data: bytes) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        hdr = IpHeader.unpack(data)
        hlen = hdr.hlen
        verify = cksum16(data[:hlen], -hdr.sum)
        logger.debug(
            "\n        vhl: 0x%02x [v: %d, hl: %d (%d)]"
            "\n        tos: 0x%02x"
            "\n      total: %d (payload: %d)"
            "\n         id: %d"
            "\n     offset: 0x%04x [flags=%x, offset=%d]"
            "\n        ttl: %d"
            "\n   protocol: %d (%s)"
            "\n        sum: 0x%04x (0x%04x)"
            "\n        src: %s"
            "\n        dst: %s\n%s",
            hdr.vhl, hdr.version, hdr.vhl & 0x0F, hlen, hdr.tos,
            hdr.total, hdr.total - hlen, hdr.id,
            hdr.offset, (hdr.offset & 0xE000) >> 13, hdr.offset & 0x1FFF,
            hdr.ttl, hdr.protocol, self.protocol_name(hdr.protocol),
            hdr.sum, verify, ip_addr_ntop(hdr.src), ip_addr_ntop(hdr.dst),
            hexdump(data),
        )

    def _route_add(self, network: int, netmask: int, nexthop: int, iface: IpIface) -> None:
        self._routes.insert(0, _Route(network, netmask, nexthop, iface))
        logger.info(
            "network=%s, netmask=%s, nexthop=%s, iface=%s dev=%s",
            ip_addr_ntop(network), ip_addr_ntop(netmask), ip_addr_ntop(nexthop),
            ip_addr_ntop(iface.unicast), iface.dev.name if iface.dev else "-",
        )

    def _route_lookup(self, dst: int) -> _Route | None:
        candidate = None
        for route in self._routes:
            if dst & route.netmask == route.network:
                if candidate is None or candidate.netmask < route.netmask:
                    candidate = route
        return candidate

    def register_iface(self, dev: NetDevice, iface: IpIface) -> None:
        """Attach ``iface`` to ``dev`` and add the route to its subnet."""
        dev.add_iface(iface)
        self._route_add(iface.unicast & iface.netmask, iface.netmask, IP_ADDR_ANY, iface)
        self.ifaces.insert(0, iface)
        logger.info(
            "registered: dev=%s, unicast=%s, netmask=%s, broadcast=%s",
            dev.name, ip_addr_ntop(iface.unicast), ip_addr_ntop(iface.netmask),
            ip_addr_ntop(iface.broadcast),
        )

    def select_iface(self, addr: int) -> IpIface | None:
        """Return the interface whose unicast address is ``addr``."""
        return next((iface for iface in self.ifaces if iface.unicast == addr), None)

    def route_get_iface(self, dst: int) -> IpIface | None:
        """Return the interface that the route to ``dst`` goes out of."""
        route = self._route_lookup(dst)
        return route.iface if route else None

    def set_default_gateway(self, iface: IpIface, gateway: str) -> None:
        """Add a default route through ``gateway`` on ``iface``."""
        self._route_add(IP_ADDR_ANY, IP_ADDR_ANY, ip_addr_pton(gateway), iface)

    def register_protocol(self, name, type_, handler) -> None:
        """Register ``handler(data, src, dst, iface)`` for IP protocol number ``type_``."""
        for entry in self._protocols:
            if entry.type == type_:
                raise IpError(
                    f"already exists, type={name}(0x{type_:02x}), "
                    f"exist={entry.name}(0x{entry.type:02x})"
                )
        self._protocols.insert(0, _Protocol(name[:_NAME_MAX], type_, handler))
        logger.info("registered, type=%s(0x%02x)", name, type_)

    def protocol_name(self, type_) -> str:
        return next((p.name for p in self._protocols if p.type == type_), "UNKNOWN")

    def input(self, data, dev) -> None:
        """Validate a received datagram and pass its payload to the upper protocol."""
        data = bytes(data)
        if len(data) < IP_HDR_SIZE_MIN:
            raise IpError("too short")
        hdr = IpHeader.unpack(data)
        if hdr.version != IP_VERSION_IPV4:
            raise IpError(f"ip version error: v={hdr.version}")
        hlen = hdr.hlen
        if len(data) < hlen:
            raise IpError(f"header length error: hlen={hlen}, len={len(data)}")
        if len(data) < hdr.total:
            raise IpError(f"total length error: total={hdr.total}, len={len(data)}")
        if cksum16(data[:hlen]) != 0:
            raise IpError(
                f"checksum error: sum=0x{hdr.sum:04x}, "
                f"verify=0x{cksum16(data[:hlen], -hdr.sum):04x}"
            )
        if hdr.offset & 0x2000 or hdr.offset & 0x1FFF:
            raise IpError("fragments does not support")
        iface = dev.get_iface(IfaceFamily.IP)
        if iface is None:
            return
        if hdr.dst != iface.unicast and hdr.dst not in (iface.broadcast, IP_ADDR_BROADCAST):
            return
        logger.debug(
            "dev=%s, iface=%s, protocol=%s(0x%02x), len=%d",
            dev.name, ip_addr_ntop(iface.unicast), self.protocol_name(hdr.protocol),
            hdr.protocol, hdr.total,
        )
        self._dump(data[:hdr.total])
        for proto in self._protocols:
            if proto.type == hdr.protocol:
                proto.handler(data[hlen:hdr.total], hdr.src, hdr.dst, iface)
                return

    def _generate_id(self) -> int:
        with self._id_lock:
            ident = self._id
            self._id = (self._id + 1) & 0xFFFF
        return ident

    def _output_device(self, iface: IpIface, data: bytes, dst: int) -> None:
        dev = iface.dev
        hwaddr = bytes(NET_DEVICE_ADDR_LEN)
        if dev.flags & DeviceFlag.NEED_ARP:
            if dst in (iface.broadcast, IP_ADDR_BROADCAST):
                hwaddr = bytes(dev.broadcast)[:dev.alen]
            else:
                if self._arp is None:
                    raise IpError(f"address resolution unavailable, dev={dev.name}")
                try:
                    resolved = self._arp.resolve(iface, dst)
                except ArpError as exc:
                    raise IpError(f"arp_resolve() failure: {exc}") from exc
                if resolved is None:
                    return
                hwaddr = resolved
        try:
            dev.output(ProtocolType.IP, data, hwaddr)
        except NetError as exc:
            raise IpError(f"device output failure: {exc}") from exc

    def _output_core(self, iface, protocol, data, src, dst, nexthop, ident, offset) -> None:
        total = IP_HDR_SIZE_MIN + len(data)
        hdr = IpHeader(
            total=total, id=ident, offset=offset, protocol=protocol, src=src, dst=dst,
        )
        hdr.sum = cksum16(hdr.pack())
        buf = hdr.pack() + data
        logger.debug(
            "dev=%s, iface=%s, protocol=%s(0x%02x), len=%d",
            iface.dev.name, ip_addr_ntop(iface.unicast), self.protocol_name(protocol),
            protocol, total,
        )
        self._dump(buf)
        self._output_device(iface, buf, nexthop)

    def output(self, protocol, data, src, dst) -> int:
        """Send ``data`` as protocol ``protocol`` from ``src`` to ``dst``; return its length.

        A datagram waiting on address resolution is dropped silently.
        """
        data = bytes(data)
        if src == IP_ADDR_ANY and dst == IP_ADDR_BROADCAST:
            raise IpError("source address is required for broadcast addresses")
        route = self._route_lookup(dst)
        if route is None:
            raise IpError(f"no route to host, addr={ip_addr_ntop(dst)}")
        iface = route.iface
        if src != IP_ADDR_ANY and src != iface.unicast:
            raise IpError(
                f"unable to output with specified source address, addr={ip_addr_ntop(src)}"
            )
        nexthop = route.nexthop if route.nexthop != IP_ADDR_ANY else dst
        dev = iface.dev
        if dev.mtu < IP_HDR_SIZE_MIN + len(data):
            raise IpError(
                f"too long, dev={dev.name}, mtu={dev.mtu}, total={IP_HDR_SIZE_MIN + len(data)}"
            )
        ident = self._generate_id()
        self._output_core(iface, protocol, data, iface.unicast, dst, nexthop, ident, 0)
        return len(data)