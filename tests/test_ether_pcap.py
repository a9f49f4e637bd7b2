import socket

import pytest

from tinynet.drivers.ether_pcap import EtherPcapDevice, ether_pcap_init
from tinynet.ether import (
    ETHER_ADDR_ANY,
    ETHER_ADDR_BROADCAST,
    ETHER_FRAME_SIZE_MIN,
    ETHER_HDR_SIZE,
    ETHER_PAYLOAD_SIZE_MAX,
    ETHER_TYPE_ARP,
    ETHER_TYPE_IP,
    ether_addr_pton,
)
from tinynet.net import DeviceFlag, DeviceType, NetError, NetStack, ProtocolType
from tinynet.platform import IrqConflictError

MAC = "00:00:5e:00:53:11"
OTHER_MAC = "00:00:5e:00:53:12"


@pytest.fixture
def stack():
    return NetStack()


@pytest.fixture
def dev(stack):
    return ether_pcap_init(stack, "eth0", MAC)


@pytest.fixture
def pair():
    a, b = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
    yield a, b
    a.close()
    b.close()


def _frame(dst, src, type_, payload):
    return dst + src + type_.to_bytes(2, "big") + payload


def test_init_configures_ethernet_device(stack, dev):
    assert dev.type == DeviceType.ETHERNET
    assert dev.mtu == ETHER_PAYLOAD_SIZE_MAX
    assert dev.addr == ether_addr_pton(MAC)
    assert dev.ifname == "eth0"
    assert dev.sock is None
    assert dev.fileno() == -1
    assert stack.devices == [dev]


def test_init_without_address_leaves_any(stack):
    dev = ether_pcap_init(stack, "eth1")
    assert dev.addr == ETHER_ADDR_ANY


def test_init_rejects_bad_address(stack):
    with pytest.raises(ValueError):
        ether_pcap_init(stack, "eth0", "00:11:22")


def test_irq_is_shared(stack, dev):
    with pytest.raises(IrqConflictError):
        stack.intr.request_irq(dev.irq, lambda irq, d: None, 0, "other", None)


def test_transmit_sends_frame(dev, pair):
    a, b = pair
    dev.sock = a
    dst = ether_addr_pton(OTHER_MAC)
    dev.transmit(ETHER_TYPE_ARP, b"payload", dst)
    frame = b.recv(2000)
    assert len(frame) == ETHER_FRAME_SIZE_MIN
    assert frame[:6] == dst
    assert frame[6:12] == dev.addr
    assert frame[12:14] == b"\x08\x06"
    assert frame[ETHER_HDR_SIZE:ETHER_HDR_SIZE + 7] == b"payload"


def test_transmit_when_closed_raises(dev):
    with pytest.raises(NetError):
        dev.transmit(ETHER_TYPE_IP, b"x", ETHER_ADDR_BROADCAST)


def test_isr_delivers_matching_frames(stack, dev, pair):
    a, b = pair
    received = []
    stack.register_protocol("IP", ProtocolType.IP, lambda data, d: received.append((data, d)))
    stack.register_protocol("ARP", ProtocolType.ARP, lambda data, d: received.append((data, d)))
    dev.sock = a
    other = ether_addr_pton(OTHER_MAC)
    b.send(_frame(dev.addr, other, ETHER_TYPE_IP, b"first"))
    b.send(_frame(other, dev.addr, ETHER_TYPE_IP, b"dropped"))
    b.send(_frame(ETHER_ADDR_BROADCAST, other, ETHER_TYPE_ARP, b"second"))
    dev.isr(dev.irq, dev)
    stack.softirq_handler()
    assert sorted(data for data, _ in received) == [b"first", b"second"]
    assert all(d is dev for _, d in received)


def test_isr_ignores_short_frames(stack, dev, pair):
    a, b = pair
    received = []
    stack.register_protocol("IP", ProtocolType.IP, lambda data, d: received.append(data))
    dev.sock = a
    b.send(b"\x01\x02")
    b.send(_frame(dev.addr, ether_addr_pton(OTHER_MAC), ETHER_TYPE_IP, b"ok"))
    dev.isr(dev.irq, dev)
    stack.softirq_handler()
    assert received == [b"ok"]


def test_open_on_missing_interface_fails(stack):
    dev = ether_pcap_init(stack, "nosuchif0", MAC)
    with pytest.raises(NetError):
        dev.open()
    assert not dev.is_up()
    assert dev.sock is None


def test_close_releases_socket(dev, pair):
    a, _ = pair
    dev.sock = a
    dev.flags |= DeviceFlag.UP
    dev.close()
    assert dev.sock is None
    assert a.fileno() == -1
    assert dev.state() == "down"


def test_constructed_device_is_ethernet():
    dev = EtherPcapDevice(ifname="eth9")
    assert dev.type == DeviceType.ETHERNET
    assert dev.broadcast == ETHER_ADDR_BROADCAST