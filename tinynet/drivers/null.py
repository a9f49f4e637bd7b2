"""A device that silently drops everything it transmits."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tinynet.net import DeviceType, NetDevice, NetStack
from tinynet.util import hexdump

logger = logging.getLogger(__name__)

NULL_MTU = 0xFFFF


@dataclass(eq=False)
class NullDevice(NetDevice):
    """Discards all output."""

    type: DeviceType = DeviceType.NULL
    mtu: int = NULL_MTU

    def transmit(self, type_, data, dst):
        protocol = self.stack.protocol_name(type_) if self.stack else "UNKNOWN"
        logger.debug("dev=%s, type=%s(0x%04x), len=%d", self.name, protocol, type_, len(data))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("\n%s", hexdump(data))


def null_init(stack: NetStack) -> NullDevice:
    """Create a null device and register it with ``stack``."""
    dev = stack.register_device(NullDevice())
    logger.debug("initialized, dev=%s", dev.name)
    return dev