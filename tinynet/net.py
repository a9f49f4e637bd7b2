"""Network devices, interfaces and the protocol dispatch core."""

from __future__ import annotations

import enum
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from tinynet.platform import Interrupts, Irq
from tinynet.util import hexdump

logger = logging.getLogger(__name__)

NET_DEVICE_ADDR_LEN = 16
_NAME_MAX = 15


class NetError(Exception):
    """A device or protocol operation failed."""


class DeviceType(enum.IntEnum):
    NULL = 0x0000
    LOOPBACK = 0x0001
    ETHERNET = 0x0002
    DUMMY = 0x0003


class DeviceFlag(enum.IntFlag):
    UP = 0x0001
    LOOPBACK = 0x0010
    BROADCAST = 0x0020
    P2P = 0x0040
    NEED_ARP = 0x0100


class IfaceFamily(enum.IntEnum):
    IP = 1
    IPV6 = 2


class ProtocolType(enum.IntEnum):
    IP = 0x0800
    ARP = 0x0806
    IPV6 = 0x86DD


def _debugdump(data: bytes) -> None:
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("\n%s", hexdump(data))


@dataclass(eq=False)
class NetIface:
    """A protocol-family interface attached to a device."""

    family: IfaceFamily
    dev: "NetDevice | None" = field(default=None, repr=False)


@dataclass(eq=False)
class NetDevice(ABC):
    """A network device; drivers subclass it and implement ``transmit``."""

    type: DeviceType = DeviceType.NULL
    mtu: int = 0
    flags: DeviceFlag = DeviceFlag(0)
    hlen: int = 0
    alen: int = 0
    addr: bytes = b""
    broadcast: bytes = b""
    index: int = -1
    name: str = ""
    ifaces: list = field(default_factory=list, repr=False)
    stack: "NetStack | None" = field(default=None, repr=False)

    @property
    def peer(self) -> bytes:
        """Peer address of a point-to-point device (shares storage with broadcast)."""
        return self.broadcast

    @peer.setter
    def peer(self, value: bytes) -> None:
        self.broadcast = value

    def is_up(self) -> bool:
        return bool(self.flags & DeviceFlag.UP)

    def state(self) -> str:
        return "up" if self.is_up() else "down"

    def add_iface(self, iface: NetIface) -> None:
        """Attach ``iface``; only one interface per family is allowed."""
        if any(entry.family == iface.family for entry in self.ifaces):
            raise NetError(f"already exists, dev={self.name}, family={int(iface.family)}")
        iface.dev = self
        self.ifaces.insert(0, iface)

    def get_iface(self, family):
        """Return the interface of ``family`` or None."""
        return next((entry for entry in self.ifaces if entry.family == family), None)

    def open(self) -> None:
        if self.is_up():
            raise NetError(f"already opened, dev={self.name}")
        self._on_open()
        self.flags |= DeviceFlag.UP
        logger.info("dev=%s, state=%s", self.name, self.state())

    def close(self) -> None:
        if not self.is_up():
            raise NetError(f"not opened, dev={self.name}")
        self._on_close()
        self.flags &= ~DeviceFlag.UP
        logger.info("dev=%s, state=%s", self.name, self.state())

    def _on_open(self) -> None:
        """Driver hook run while opening; devices without resources need nothing."""

    def _on_close(self) -> None:
        """Driver hook run while closing; devices without resources need nothing."""

    @abstractmethod
    def transmit(self, type_, data, dst):
        """Send ``data`` of protocol ``type_`` to hardware address ``dst``."""

    def output(self, type_, data, dst=None) -> None:
        """Check state and size, then hand ``data`` to the driver."""
        if not self.is_up():
            raise NetError(f"not opened, dev={self.name}")
        if len(data) > self.mtu:
            raise NetError(f"too long, dev={self.name}, mtu={self.mtu}, len={len(data)}")
        logger.debug("dev=%s, type=0x%04x, len=%d", self.name, type_, len(data))
        _debugdump(data)
        self.transmit(type_, bytes(data), dst)


@dataclass(eq=False)
class _Protocol:
    name: str
    type: int
    handler: Callable[[bytes, NetDevice], Any]
    queue: deque = field(default_factory=deque)


@dataclass(eq=False)
class _Timer:
    name: str
    interval: float
    handler: Callable[[], Any]
    last: float


@dataclass(eq=False)
class _Event:
    handler: Callable[[Any], Any]
    arg: Any


class NetStack:
    """Registry of devices, protocols, timers and events, driven by an interrupt thread."""

    def __init__(self):
        self.devices: list[NetDevice] = []
        self._protocols: list[_Protocol] = []
        self._timers: list[_Timer] = []
        self._events: list[_Event] = []
        self._next_index = 0
        self.intr = Interrupts(self.softirq_handler, self.event_handler, self.timer_handler)

    def register_device(self, dev: NetDevice) -> NetDevice:
        """Assign an index and a name to ``dev`` and add it to the stack."""
        dev.index = self._next_index
        self._next_index += 1
        dev.name = f"net{dev.index}"
        dev.stack = self
        self.devices.insert(0, dev)
        logger.info("registered, dev=%s, type=0x%04x", dev.name, dev.type)
        return dev

    def register_protocol(self, name, type_, handler) -> None:
        """Register ``handler(data, dev)`` for frames of ``type_``."""
        for proto in self._protocols:
            if proto.type == type_:
                raise NetError(
                    f"already registered, type={name}(0x{type_:04x}), "
                    f"exist={proto.name}(0x{proto.type:04x})"
                )
        self._protocols.insert(0, _Protocol(name[:_NAME_MAX], type_, handler))
        logger.info("registered, type=%s(0x%04x)", name, type_)

    def protocol_name(self, type_) -> str:
        return next((p.name for p in self._protocols if p.type == type_), "UNKNOWN")

    def input_handler(self, type_, data, dev) -> None:
        """Queue received ``data`` for its protocol; unknown types are dropped."""
        for proto in self._protocols:
            if proto.type == type_:
                proto.queue.append((dev, bytes(data)))
                logger.debug(
                    "queue pushed (num:%d), dev=%s, type=%s(0x%04x), len=%d",
                    len(proto.queue), dev.name, proto.name, type_, len(data),
                )
                _debugdump(data)
                self.intr.raise_irq(Irq.SOFTIRQ)
                return

    def softirq_handler(self) -> None:
        """Drain every protocol queue into its handler."""
        for proto in self._protocols:
            while proto.queue:
                dev, data = proto.queue.popleft()
                logger.debug(
                    "queue popped (num:%d), dev=%s, type=%s(0x%04x), len=%d",
                    len(proto.queue), dev.name, proto.name, proto.type, len(data),
                )
                proto.handler(data, dev)

    def register_timer(self, name, interval, handler) -> None:
        """Call ``handler()`` whenever more than ``interval`` seconds have passed."""
        self._timers.insert(0, _Timer(name[:_NAME_MAX], interval, handler, time.monotonic()))
        logger.info("registered: %s interval=%s", name, interval)

    def timer_handler(self) -> None:
        for timer in self._timers:
            now = time.monotonic()
            if now - timer.last > timer.interval:
                timer.handler()
                timer.last = now

    def subscribe_event(self, handler, arg=None) -> None:
        self._events.insert(0, _Event(handler, arg))

    def event_handler(self) -> None:
        for event in self._events:
            event.handler(event.arg)

    def raise_event(self) -> None:
        self.intr.raise_irq(Irq.EVENT)

    def interrupt(self) -> None:
        """Deliver an event to every subscriber, waking blocked operations."""
        self.intr.raise_irq(Irq.EVENT)

    def run(self) -> None:
        """Start interrupt processing and open all devices."""
        self.intr.run()
        logger.debug("open all devices...")
        for dev in self.devices:
            try:
                dev.open()
            except (NetError, OSError) as exc:
                logger.error("failure, dev=%s: %s", dev.name, exc)
        logger.debug("running...")

    def shutdown(self) -> None:
        """Close all devices and stop interrupt processing."""
        logger.debug("close all devices...")
        for dev in self.devices:
            try:
                dev.close()
            except (NetError, OSError) as exc:
                logger.error("failure, dev=%s: %s", dev.name, exc)
        self.intr.shutdown()
        logger.debug("shutdown")