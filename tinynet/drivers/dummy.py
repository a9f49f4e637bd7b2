"""A device that drops output and raises its interrupt for each frame."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tinynet.net import DeviceType, NetDevice, NetStack
from tinynet.platform import IRQ_SHARED, Irq
from tinynet.util import hexdump

logger = logging.getLogger(__name__)

DUMMY_MTU = 0xFFFF
DUMMY_IRQ = int(Irq.BASE)


@dataclass(eq=False)
class DummyDevice(NetDevice):
    """Discards output and signals DUMMY_IRQ."""

    type: DeviceType = DeviceType.DUMMY
    mtu: int = DUMMY_MTU

    def transmit(self, type_, data, dst):
        logger.debug("dev=%s, type=0x%04x, len=%d", self.name, type_, len(data))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("\n%s", hexdump(data))
        if self.stack is not None:
            self.stack.intr.raise_irq(DUMMY_IRQ)


def _dummy_isr(irq, dev):
    logger.debug("irq=%d, dev=%s", irq, dev.name)


def dummy_init(stack: NetStack) -> DummyDevice:
    """Create a dummy device, register it and hook its shared IRQ."""
    dev = stack.register_device(DummyDevice())
    stack.intr.request_irq(DUMMY_IRQ, _dummy_isr, IRQ_SHARED, dev.name, dev)
    logger.debug("initialized, dev=%s", dev.name)
    return dev