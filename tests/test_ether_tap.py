import os
import socket

import pytest

from tinynet.drivers.ether_tap import EtherTapDevice, ether_tap_init
from tinynet.ether import (
    ETHER_ADDR_ANY,
    ETHER_ADDR_BROADCAST,
    ETHER_FRAME_SIZE_MIN,
    ETHER_HDR_SIZE,
    ETHER_PAYLOAD_SIZE_MAX,
    ETHER_TYPE_IP,
    ether_addr_pton,
)
from tinynet.net import DeviceFlag, DeviceType, NetError, NetStack, ProtocolType
from tinynet.platform import IrqConflictError

MAC = "00:00:5e:00:53:01"
OTHER_MAC = "00:00:5e:00:53:02"


@pytest.fixture
def stack():
    return NetStack()


@pytest.fixture
def dev(stack):
    return ether_tap_init(stack, "tap0", MAC)


@pytest.fixture
def pair():
    a, b = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
    yield a, b
    a.close()
    b.close()


def _frame(dst, src, payload):
    return dst + src + ETHER_TYPE_IP.to_bytes(2, "big") + payload


def _capture(stack):
    received = []
    stack.register_protocol("IP", ProtocolType.IP, lambda data, d: received.append((data, d)))
    return received


def test_init_configures_ethernet_device(stack, dev):
    assert dev.type == DeviceType.ETHERNET
    assert dev.mtu == ETHER_PAYLOAD_SIZE_MAX
    assert dev.flags & DeviceFlag.NEED_ARP
    assert dev.addr == ether_addr_pton(MAC)
    assert dev.broadcast == ETHER_ADDR_BROADCAST
    assert dev.name == "net0"
    assert dev.ifname == "tap0"
    assert dev.fd == -1
    assert dev.state() == "down"
    assert stack.devices == [dev]


def test_init_without_address_leaves_any(stack):
    dev = ether_tap_init(stack, "tap1")
    assert dev.addr == ETHER_ADDR_ANY


def test_init_rejects_bad_address(stack):
    with pytest.raises(ValueError):
        ether_tap_init(stack, "tap0", "not-a-mac")


def test_interface_name_is_truncated(stack):
    dev = ether_tap_init(stack, "a" * 30)
    assert dev.ifname == "a" * 15


def test_irq_is_shared(stack, dev):
    with pytest.raises(IrqConflictError):
        stack.intr.request_irq(dev.irq, lambda irq, d: None, 0, "other", None)


def test_transmit_writes_padded_frame(dev):
    r, w = os.pipe()
    try:
        dev.fd = w
        dev.transmit(ETHER_TYPE_IP, b"hello", ETHER_ADDR_BROADCAST)
        frame = os.read(r, 2000)
    finally:
        os.close(r)
        os.close(w)
    assert len(frame) == ETHER_FRAME_SIZE_MIN
    assert frame[:6] == ETHER_ADDR_BROADCAST
    assert frame[6:12] == dev.addr
    assert frame[12:14] == b"\x08\x00"
    assert frame[ETHER_HDR_SIZE:ETHER_HDR_SIZE + 5] == b"hello"
    assert set(frame[ETHER_HDR_SIZE + 5:]) == {0}


def test_transmit_when_closed_raises(dev):
    with pytest.raises(NetError):
        dev.transmit(ETHER_TYPE_IP, b"hello", ETHER_ADDR_BROADCAST)


def test_isr_delivers_frames_for_this_host(stack, dev, pair):
    a, b = pair
    received = _capture(stack)
    dev.fd = a.fileno()
    b.send(_frame(dev.addr, ether_addr_pton(OTHER_MAC), b"unicast"))
    b.send(_frame(ETHER_ADDR_BROADCAST, ether_addr_pton(OTHER_MAC), b"broadcast"))
    dev.isr(dev.irq, dev)
    stack.softirq_handler()
    assert received == [(b"unicast", dev), (b"broadcast", dev)]


def test_isr_drops_frames_for_other_hosts(stack, dev, pair):
    a, b = pair
    received = _capture(stack)
    dev.fd = a.fileno()
    b.send(_frame(ether_addr_pton(OTHER_MAC), dev.addr, b"elsewhere"))
    dev.isr(dev.irq, dev)
    stack.softirq_handler()
    assert received == []
    assert not dev._readable()


def test_isr_on_closed_device_reads_nothing(stack, dev):
    received = _capture(stack)
    dev.isr(dev.irq, dev)
    stack.softirq_handler()
    assert received == []


def test_open_failure_leaves_device_down(dev, tmp_path):
    dev.clone_device = str(tmp_path / "missing")
    with pytest.raises(NetError):
        dev.open()
    assert not dev.is_up()
    assert dev.fd == -1


def test_close_releases_descriptor(dev):
    r, w = os.pipe()
    try:
        dev.fd = w
        dev.flags |= DeviceFlag.UP
        dev.close()
        assert dev.fd == -1
        assert dev.state() == "down"
        with pytest.raises(OSError):
            os.write(w, b"x")
    finally:
        os.close(r)


def test_constructed_device_is_ethernet():
    dev = EtherTapDevice(ifname="tap9")
    assert dev.type == DeviceType.ETHERNET
    assert dev.alen == len(ETHER_ADDR_BROADCAST)