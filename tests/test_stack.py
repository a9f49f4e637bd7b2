import threading
from dataclasses import dataclass, field

from tinynet.icmp import ICMP_HDR_SIZE, IcmpType
from tinynet.ip import IP_ADDR_ANY, IP_PROTOCOL_ICMP, IpHeader, ip_iface_alloc
from tinynet.net import NetDevice, ProtocolType
from tinynet.stack import net_init


@dataclass(eq=False)
class CaptureDevice(NetDevice):
    mtu: int = 1500
    sent: list = field(default_factory=list)
    event: threading.Event = field(default_factory=threading.Event)

    def transmit(self, type_, data, dst):
        self.sent.append(bytes(data))
        self.event.set()


def test_protocols_registered():
    stack = net_init()
    assert stack.net.protocol_name(ProtocolType.IP) == "IP"
    assert stack.net.protocol_name(ProtocolType.ARP) == "ARP"
    assert stack.ip.protocol_name(IP_PROTOCOL_ICMP) == "ICMP"


def test_context_manager_runs_and_stops():
    stack = net_init()
    with stack as running:
        assert running is stack
        assert stack.net.intr.running
    assert not stack.net.intr.running


def test_echo_request_answered_by_running_stack():
    stack = net_init()
    dev = stack.net.register_device(CaptureDevice())
    iface = ip_iface_alloc("192.0.2.1", "255.255.255.0")
    stack.ip.register_iface(dev, iface)
    with stack:
        stack.icmp.output(IcmpType.ECHO, 0, 0x00020003, b"data", IP_ADDR_ANY, iface.unicast)
        assert dev.event.wait(2)
        request = dev.sent.pop()
        dev.event.clear()
        stack.net.input_handler(ProtocolType.IP, request, dev)
        assert dev.event.wait(2)
    reply = dev.sent[-1]
    hdr = IpHeader.unpack(reply)
    message = reply[hdr.hlen:hdr.total]
    assert hdr.protocol == IP_PROTOCOL_ICMP
    assert hdr.dst == iface.unicast
    assert message[0] == IcmpType.ECHOREPLY
    assert message[ICMP_HDR_SIZE:] == b"data"