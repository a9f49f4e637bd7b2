"""Ethernet device capturing frames from a host interface through a raw packet socket."""

from __future__ import annotations

import fcntl
import logging
import socket
import struct
from dataclasses import dataclass

from tinynet.drivers.ether_tap import IFNAMSIZ, _FdEtherDevice
from tinynet.ether import ether_addr_pton
from tinynet.net import NetError, NetStack
from tinynet.platform import IRQ_SHARED, Irq

logger = logging.getLogger(__name__)

ETHER_PCAP_IRQ = int(Irq.BASE) + 2

ETH_P_ALL = 0x0003
SIOCGIFFLAGS = 0x8913
SIOCSIFFLAGS = 0x8914
IFF_PROMISC = 0x0100

_IFREQ_FLAGS = struct.Struct("16sH22x")


@dataclass(eq=False)
class EtherPcapDevice(_FdEtherDevice):
    """Ethernet device sending and receiving raw frames on a host interface."""

    irq: int = ETHER_PCAP_IRQ
    sock: "socket.socket | None" = None

    def fileno(self) -> int:
        return self.sock.fileno() if self.sock is not None else -1

    def _open_handle(self) -> None:
        family = getattr(socket, "AF_PACKET", None)
        if family is None:
            raise NetError(f"packet sockets are not supported, dev={self.name}")
        try:
            sock = socket.socket(family, socket.SOCK_RAW, socket.htons(ETH_P_ALL))
        except OSError as exc:
            raise NetError(f"socket: {exc}, dev={self.name}") from exc
        try:
            sock.bind((self.ifname, ETH_P_ALL))
            name = self.ifname.encode()[:IFNAMSIZ - 1]
            reply = fcntl.ioctl(sock.fileno(), SIOCGIFFLAGS, _IFREQ_FLAGS.pack(name, 0))
            _, flags = _IFREQ_FLAGS.unpack(reply[:_IFREQ_FLAGS.size])
            fcntl.ioctl(sock.fileno(), SIOCSIFFLAGS, _IFREQ_FLAGS.pack(name, flags | IFF_PROMISC))
        except OSError as exc:
            sock.close()
            raise NetError(f"setup failure: {exc}, dev={self.name}") from exc
        self.sock = sock

    def _close_handle(self) -> None:
        if self.sock is not None:
            self.sock.close()
        self.sock = None

    def _send(self, frame: bytes) -> int:
        return self.sock.send(frame)

    def _recv(self, size: int) -> bytes:
        data = self.sock.recv(size)
        if not data:
            raise EOFError(f"end of file, dev={self.name}")
        return data

    def open(self) -> None:
        """Bind to the host interface in promiscuous mode and bring the device up."""
        super().open()

    def close(self) -> None:
        """Close the packet socket and bring the device down."""
        super().close()

    def transmit(self, type_, data, dst):
        """Send ``data`` on the host interface as an Ethernet frame."""
        super().transmit(type_, data, dst)

    def isr(self, irq, dev):
        """Drain frames captured on the host interface of ``dev``."""
        super().isr(irq, dev)


def ether_pcap_init(stack: NetStack, name: str, addr: str | None = None) -> EtherPcapDevice:
    """Create a capture device on host interface ``name`` and register it with ``stack``.

    ``addr`` overrides the hardware address; without it the interface's own
    address is used once the device is opened.
    """
    dev = EtherPcapDevice(ifname=name)
    if addr:
        dev.addr = ether_addr_pton(addr)
    stack.register_device(dev)
    stack.intr.request_irq(dev.irq, dev.isr, IRQ_SHARED, dev.name, dev)
    logger.debug("ethernet device initialized, dev=%s", dev.name)
    return dev