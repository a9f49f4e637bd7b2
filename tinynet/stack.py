"""Assembly of the protocol stack: device core, ARP, IP and ICMP."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tinynet.arp import Arp
from tinynet.icmp import Icmp
from tinynet.ip import Ip
from tinynet.net import NetStack

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Stack:
    """An initialised protocol stack; use as a context manager to run it."""

    net: NetStack
    arp: Arp
    ip: Ip
    icmp: Icmp

    def __enter__(self) -> "Stack":
        self.net.run()
        return self

    def __exit__(self, *exc_info) -> None:
        self.net.shutdown()


def net_init() -> Stack:
    """Create the device core and register ARP, IP and ICMP on it."""
    net = NetStack()
    arp = Arp(net)
    ip = Ip(net, arp)
    icmp = Icmp(ip)
    logger.info("initialized")
    return Stack(net, arp, ip, icmp)