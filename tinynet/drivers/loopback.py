"""A device that hands every transmitted frame back to the stack as input."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field

from tinynet.net import DeviceFlag, DeviceType, NetDevice, NetError, NetStack
from tinynet.platform import IRQ_SHARED, Irq
from tinynet.util import hexdump

logger = logging.getLogger(__name__)

LOOPBACK_MTU = 0xFFFF
LOOPBACK_QUEUE_LIMIT = 16
LOOPBACK_IRQ = int(Irq.BASE) + 1


@dataclass(eq=False)
class LoopbackDevice(NetDevice):
    """Queues output and delivers it as input when its IRQ is serviced."""

    type: DeviceType = DeviceType.LOOPBACK
    mtu: int = LOOPBACK_MTU
    flags: DeviceFlag = DeviceFlag.LOOPBACK
    irq: int = LOOPBACK_IRQ
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _queue: deque = field(default_factory=deque, init=False, repr=False)

    def transmit(self, type_, data, dst):
        """Queue ``data`` for delivery; raise NetError when the queue is full."""
        with self._lock:
            if len(self._queue) >= LOOPBACK_QUEUE_LIMIT:
                raise NetError(f"queue is full, dev={self.name}")
            self._queue.append((type_, bytes(data)))
            num = len(self._queue)
        logger.debug("queue pushed (num:%d), dev=%s, type=0x%04x, len=%d",
                      num, self.name, type_, len(data))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("\n%s", hexdump(data))
        if self.stack is not None:
            self.stack.intr.raise_irq(self.irq)

    def isr(self, irq, dev):
        """Deliver every queued frame of ``dev`` to its stack."""
        if dev.stack is None:
            raise NetError(f"device is not registered, dev={dev.name}")
        with dev._lock:
            entries = list(dev._queue)
            dev._queue.clear()
        for type_, data in entries:
            logger.debug("queue popped, dev=%s, type=0x%04x, len=%d", dev.name, type_, len(data))
            dev.stack.input_handler(type_, data, dev)


def loopback_init(stack: NetStack) -> LoopbackDevice:
    """Create a loopback device, register it and hook its IRQ."""
    dev = stack.register_device(LoopbackDevice())
    stack.intr.request_irq(dev.irq, dev.isr, IRQ_SHARED, dev.name, dev)
    logger.debug("initialized, dev=%s", dev.name)
    return dev