"""Ethernet device backed by a Linux TAP interface."""

from __future__ import annotations

import fcntl
import logging
import os
import select
import socket
import struct
import threading
from dataclasses import dataclass, field

from tinynet.ether import (
    ETHER_ADDR_ANY,
    ETHER_ADDR_LEN,
    ether_addr_pton,
    ether_poll_helper,
    ether_setup_helper,
    ether_transmit_helper,
)
from tinynet.net import NetDevice, NetError, NetStack
from tinynet.platform import IRQ_SHARED, Irq

logger = logging.getLogger(__name__)

CLONE_DEVICE = "/dev/net/tun"
ETHER_TAP_IRQ = int(Irq.BASE) + 1

IFNAMSIZ = 16

TUNSETIFF = 0x400454CA
IFF_TAP = 0x0002
IFF_NO_PI = 0x1000
SIOCGIFHWADDR = 0x8927

_IFREQ_FLAGS = struct.Struct("16sH22x")
_IFREQ_ADDR = struct.Struct("16sH22x")
_HWADDR_OFFSET = 18
_DRAIN_WAIT = 0.05


def _ifname_bytes(ifname: str) -> bytes:
    return ifname.encode()[:IFNAMSIZ - 1]


def _hwaddr(ifname: str) -> bytes:
    """Ask the kernel for the hardware address of interface ``ifname``."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as soc:
        request = _IFREQ_ADDR.pack(_ifname_bytes(ifname), socket.AF_INET)
        reply = fcntl.ioctl(soc.fileno(), SIOCGIFHWADDR, request)
    return bytes(reply[_HWADDR_OFFSET:_HWADDR_OFFSET + ETHER_ADDR_LEN])


def _write(dev: "_FdEtherDevice", frame: bytes) -> int:
    return dev._send(frame)


def _read(dev: "_FdEtherDevice", size: int) -> bytes:
    return dev._recv(size)


@dataclass(eq=False)
class _FdEtherDevice(NetDevice):
    """Ethernet device exchanging frames through one file descriptor.

    While open, a watcher thread raises the device IRQ whenever frames are
    waiting; the ISR then drains them into the stack.
    """

    addr: bytes = ETHER_ADDR_ANY
    ifname: str = ""
    irq: int = 0
    _drained: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _watcher: "threading.Thread | None" = field(default=None, init=False, repr=False)
    _stop_pipe: "tuple[int, int] | None" = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        ether_setup_helper(self)
        self.ifname = self.ifname[:IFNAMSIZ - 1]

    # Handle operations provided by concrete drivers.

    def fileno(self) -> int:
        raise NotImplementedError

    def _open_handle(self) -> None:
        raise NotImplementedError

    def _close_handle(self) -> None:
        raise NotImplementedError

    def _send(self, frame: bytes) -> int:
        raise NotImplementedError

    def _recv(self, size: int) -> bytes:
        raise NotImplementedError

    # Device life cycle.

    def open(self) -> None:
        """Attach to the host interface and bring the device up."""
        super().open()

    def close(self) -> None:
        """Release the host interface and bring the device down."""
        super().close()

    def _on_open(self) -> None:
        self._open_handle()
        if self.addr == ETHER_ADDR_ANY:
            try:
                self.addr = _hwaddr(self.ifname)
            except OSError as exc:
                self._close_handle()
                raise NetError(f"hardware address lookup failure: {exc}, dev={self.name}") from exc
        self._start_watcher()

    def _on_close(self) -> None:
        self._stop_watcher()
        self._close_handle()

    def transmit(self, type_, data, dst):
        """Wrap ``data`` in an Ethernet frame and write it out."""
        if self.fileno() < 0:
            raise NetError(f"not opened, dev={self.name}")
        try:
            ether_transmit_helper(self, type_, data, dst, _write)
        except OSError as exc:
            raise NetError(f"write: {exc}, dev={self.name}") from exc

    def isr(self, irq, dev):
        """Read every waiting frame of ``dev`` and pass it to the stack."""
        try:
            while dev._readable():
                try:
                    ether_poll_helper(dev, _read)
                except NetError as exc:
                    logger.debug("%s, dev=%s", exc, dev.name)
        except EOFError:
            logger.error("end of file, dev=%s", dev.name)
        except OSError as exc:
            logger.error("read: %s, dev=%s", exc, dev.name)
        finally:
            dev._drained.set()

    def _readable(self) -> bool:
        fd = self.fileno()
        if fd < 0:
            return False
        try:
            readable, _, _ = select.select([fd], [], [], 0)
        except (OSError, ValueError):
            return False
        return bool(readable)

    # Watcher thread standing in for signal-driven I/O.

    def _start_watcher(self) -> None:
        if self.stack is None:
            return
        self._stop.clear()
        self._drained.set()
        self._stop_pipe = os.pipe()
        self._watcher = threading.Thread(
            target=self._watch,
            args=(self.fileno(), self._stop_pipe[0]),
            name=f"{self.name}-rx",
            daemon=True,
        )
        self._watcher.start()

    def _stop_watcher(self) -> None:
        if self._watcher is None:
            return
        self._stop.set()
        stop_r, stop_w = self._stop_pipe
        os.write(stop_w, b"\0")
        self._watcher.join()
        os.close(stop_r)
        os.close(stop_w)
        self._watcher = None
        self._stop_pipe = None

    def _watch(self, fd: int, stop_r: int) -> None:
        while not self._stop.is_set():
            try:
                readable, _, _ = select.select([fd, stop_r], [], [])
            except (OSError, ValueError):
                return
            if stop_r in readable:
                return
            self._drained.clear()
            self.stack.intr.raise_irq(self.irq)
            while not self._drained.wait(_DRAIN_WAIT):
                if self._stop.is_set():
                    return


@dataclass(eq=False)
class EtherTapDevice(_FdEtherDevice):
    """Ethernet device attached to a TAP interface of the host."""

    irq: int = ETHER_TAP_IRQ
    fd: int = -1
    clone_device: str = CLONE_DEVICE

    def fileno(self) -> int:
        return self.fd

    def _open_handle(self) -> None:
        try:
            fd = os.open(self.clone_device, os.O_RDWR)
        except OSError as exc:
            raise NetError(f"open: {exc}, dev={self.name}") from exc
        try:
            request = _IFREQ_FLAGS.pack(_ifname_bytes(self.ifname), IFF_TAP | IFF_NO_PI)
            fcntl.ioctl(fd, TUNSETIFF, request)
        except OSError as exc:
            os.close(fd)
            raise NetError(f"ioctl(TUNSETIFF): {exc}, dev={self.name}") from exc
        self.fd = fd

    def _close_handle(self) -> None:
        if self.fd >= 0:
            os.close(self.fd)
        self.fd = -1

    def _send(self, frame: bytes) -> int:
        return os.write(self.fd, frame)

    def _recv(self, size: int) -> bytes:
        data = os.read(self.fd, size)
        if not data:
            raise EOFError(f"end of file, dev={self.name}")
        return data

    def open(self) -> None:
        """Open the TAP interface and bring the device up."""
        super().open()

    def close(self) -> None:
        """Close the TAP interface and bring the device down."""
        super().close()

    def transmit(self, type_, data, dst):
        """Write ``data`` to the TAP interface as an Ethernet frame."""
        super().transmit(type_, data, dst)

    def isr(self, irq, dev):
        """Drain frames waiting on the TAP interface of ``dev``."""
        super().isr(irq, dev)


def ether_tap_init(stack: NetStack, name: str, addr: str | None = None) -> EtherTapDevice:
    """Create a TAP device for host interface ``name`` and register it with ``stack``.

    ``addr`` overrides the hardware address; without it the interface's own
    address is used once the device is opened.
    """
    dev = EtherTapDevice(ifname=name)
    if addr:
        dev.addr = ether_addr_pton(addr)
    stack.register_device(dev)
    stack.intr.request_irq(dev.irq, dev.isr, IRQ_SHARED, dev.name, dev)
    logger.debug("ethernet device initialized, dev=%s", dev.name)
    return dev