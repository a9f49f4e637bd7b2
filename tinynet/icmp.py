"""Internet Control Message Protocol: echo handling and message output."""

from __future__ import annotations

import enum
import logging
import struct

from tinynet.ip import (
    IP_PAYLOAD_SIZE_MAX,
    IP_PROTOCOL_ICMP,
    Ip,
    IpError,
    IpIface,
    ip_addr_ntop,
)
from tinynet.util import cksum16, hexdump

logger = logging.getLogger(__name__)

ICMP_HDR_SIZE = 8
ICMP_BUFSIZ = IP_PAYLOAD_SIZE_MAX

ICMP_CODE_NET_UNREACH = 0
ICMP_CODE_HOST_UNREACH = 1
ICMP_CODE_PROTO_UNREACH = 2
ICMP_CODE_PORT_UNREACH = 3
ICMP_CODE_FRAGMENT_NEEDED = 4
ICMP_CODE_SOURCE_ROUTE_FAILED = 5

ICMP_CODE_REDIRECT_NET = 0
ICMP_CODE_REDIRECT_HOST = 1
ICMP_CODE_REDIRECT_TOS_NET = 2
ICMP_CODE_REDIRECT_TOS_HOST = 3

ICMP_CODE_EXCEEDED_TTL = 0
ICMP_CODE_EXCEEDED_FRAGMENT = 1

_HDR = struct.Struct("!BBHI")


class IcmpType(enum.IntEnum):
    ECHOREPLY = 0
    DEST_UNREACH = 3
    SOURCE_QUENCH = 4
    REDIRECT = 5
    ECHO = 8
    TIME_EXCEEDED = 11
    PARAM_PROBLEM = 12
    TIMESTAMP = 13
    TIMESTAMPREPLY = 14
    INFO_REQUEST = 15
    INFO_REPLY = 16


_TYPE_NAMES = {
    IcmpType.ECHOREPLY: "EchoReply",
    IcmpType.DEST_UNREACH: "DestinationUnreachable",
    IcmpType.SOURCE_QUENCH: "SourceQuench",
    IcmpType.REDIRECT: "Redirect",
    IcmpType.ECHO: "Echo",
    IcmpType.TIME_EXCEEDED: "TimeExceeded",
    IcmpType.PARAM_PROBLEM: "ParameterProblem",
    IcmpType.TIMESTAMP: "Timestamp",
    IcmpType.TIMESTAMPREPLY: "TimestampReply",
    IcmpType.INFO_REQUEST: "InformationRequest",
    IcmpType.INFO_REPLY: "InformationReply",
}


def icmp_type_ntoa(type_: int) -> str:
    """Name of an ICMP message type."""
    return _TYPE_NAMES.get(type_, "Unknown")


def _dump(data: bytes) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    type_, code, sum_, values = _HDR.unpack_from(data)
    lines = [
        f"       type: {type_} ({icmp_type_ntoa(type_)})",
        f"       code: {code}",
        f"        sum: 0x{sum_:04x} (0x{cksum16(data, -sum_):04x})",
    ]
    if type_ in (IcmpType.ECHOREPLY, IcmpType.ECHO):
        lines.append(f"         id: {values >> 16}")
        lines.append(f"        seq: {values & 0xFFFF}")
    else:
        lines.append(f"     values: 0x{values:08x}")
    logger.debug("\n%s\n%s", "\n".join(lines), hexdump(data))


class Icmp:
    """ICMP handler registered with an IP layer; answers echo requests."""

    def __init__(self, ip: Ip):
        self._ip = ip
        ip.register_protocol("ICMP", IP_PROTOCOL_ICMP, self.input)

    def input(self, data, src, dst, iface: IpIface) -> None:
        """Validate a received message and reply to echo requests."""
        data = bytes(data)
        if len(data) < ICMP_HDR_SIZE:
            raise IpError("too short")
        type_, code, sum_, values = _HDR.unpack_from(data)
        if cksum16(data) != 0:
            raise IpError(
                f"checksum error, sum=0x{sum_:04x}, verify=0x{cksum16(data, -sum_):04x}"
            )
        logger.debug(
            "%s => %s, type=%s(%d), len=%d, iface=%s",
            ip_addr_ntop(src), ip_addr_ntop(dst), icmp_type_ntoa(type_), type_,
            len(data), ip_addr_ntop(iface.unicast),
        )
        _dump(data)
        if type_ == IcmpType.ECHO:
            # A request sent to a broadcast address is answered from the interface address.
            reply_src = dst if dst == iface.unicast else iface.unicast
            self.output(IcmpType.ECHOREPLY, code, values, data[ICMP_HDR_SIZE:], reply_src, src)

    def output(self, type_, code, values, data, src, dst) -> int:
        """Build a message with a valid checksum and send it over IP; return its length."""
        data = bytes(data)
        if ICMP_HDR_SIZE + len(data) > ICMP_BUFSIZ:
            raise IpError(f"too long, len={ICMP_HDR_SIZE + len(data)}")
        message = _HDR.pack(type_, code, 0, values & 0xFFFFFFFF) + data
        message = _HDR.pack(type_, code, cksum16(message), values & 0xFFFFFFFF) + data
        logger.debug(
            "%s => %s, type=%s(%d), len=%d",
            ip_addr_ntop(src), ip_addr_ntop(dst), icmp_type_ntoa(type_), type_, len(message),
        )
        _dump(message)
        return self._ip.output(IP_PROTOCOL_ICMP, message, src, dst)