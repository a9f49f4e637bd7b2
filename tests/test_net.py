import threading
import time
from dataclasses import dataclass, field

import pytest

from tinynet.net import (
    DeviceFlag,
    DeviceType,
    IfaceFamily,
    NetDevice,
    NetError,
    NetIface,
    NetStack,
    ProtocolType,
)


@dataclass(eq=False)
class RecordingDevice(NetDevice):
    sent: list = field(default_factory=list)
    fail_open: bool = False

    def _on_open(self):
        if self.fail_open:
            raise OSError("cannot open")

    def transmit(self, type_, data, dst):
        self.sent.append((type_, data, dst))


def _device(**kwargs):
    kwargs.setdefault("mtu", 100)
    return RecordingDevice(**kwargs)


def test_base_device_is_abstract():
    with pytest.raises(TypeError):
        NetDevice()


def test_register_device_names_and_indexes():
    stack = NetStack()
    first = stack.register_device(_device())
    second = stack.register_device(_device())
    assert (first.index, first.name) == (0, "net0")
    assert (second.index, second.name) == (1, "net1")
    assert first.stack is stack
    assert set(stack.devices) == {first, second}


def test_open_close_state():
    stack = NetStack()
    dev = stack.register_device(_device())
    assert dev.name == "net0"
    assert dev.state() == "down"
    dev.open()
    assert dev.is_up()
    assert dev.state() == "up"
    with pytest.raises(NetError):
        dev.open()
    dev.close()
    assert not dev.is_up()
    assert dev.state() == "down"
    with pytest.raises(NetError):
        dev.close()


def test_open_failure_leaves_device_down():
    stack = NetStack()
    dev = stack.register_device(_device(fail_open=True))
    with pytest.raises(OSError):
        dev.open()
    assert not dev.is_up()
    assert dev.state() == "down"


def test_output_requires_up_and_respects_mtu():
    stack = NetStack()
    dev = stack.register_device(_device(mtu=4))
    with pytest.raises(NetError):
        dev.output(ProtocolType.IP, b"ab", None)
    dev.open()
    with pytest.raises(NetError):
        dev.output(ProtocolType.IP, b"abcde", None)
    dev.output(ProtocolType.IP, bytearray(b"abcd"), b"\xff")
    assert dev.sent == [(ProtocolType.IP, b"abcd", b"\xff")]


def test_add_and_get_iface():
    dev = _device()
    iface = NetIface(IfaceFamily.IP)
    dev.add_iface(iface)
    assert iface.dev is dev
    assert dev.get_iface(IfaceFamily.IP) is iface
    assert dev.get_iface(IfaceFamily.IPV6) is None
    with pytest.raises(NetError):
        dev.add_iface(NetIface(IfaceFamily.IP))


def test_peer_aliases_broadcast():
    stack = NetStack()
    dev = stack.register_device(_device(broadcast=b"\xff\xff"))
    assert dev.name == "net0"
    assert dev.peer == b"\xff\xff"
    dev.peer = b"\x01\x02"
    assert dev.broadcast == b"\x01\x02"


def test_flags_combine():
    stack = NetStack()
    dev = stack.register_device(
        _device(flags=DeviceFlag.BROADCAST | DeviceFlag.NEED_ARP, type=DeviceType.ETHERNET)
    )
    dev.open()
    assert dev.flags & DeviceFlag.NEED_ARP
    assert dev.flags & DeviceFlag.UP
    assert dev.is_up()
    dev.close()
    assert dev.flags == DeviceFlag.BROADCAST | DeviceFlag.NEED_ARP


def test_protocol_registration_and_names():
    stack = NetStack()
    stack.register_protocol("ARP", ProtocolType.ARP, lambda data, dev: None)
    assert stack.protocol_name(ProtocolType.ARP) == "ARP"
    assert stack.protocol_name(ProtocolType.IP) == "UNKNOWN"
    with pytest.raises(NetError):
        stack.register_protocol("ARP2", ProtocolType.ARP, lambda data, dev: None)


def test_protocol_name_truncated():
    stack = NetStack()
    long_name = "P" * 20
    stack.register_protocol(long_name, 0x1234, lambda data, dev: None)
    assert stack.protocol_name(0x1234) == long_name[:15]


def test_input_then_softirq_delivers_in_order():
    stack = NetStack()
    received = []
    stack.register_protocol("IP", ProtocolType.IP, lambda data, dev: received.append((data, dev)))
    dev = stack.register_device(_device())
    stack.input_handler(ProtocolType.IP, bytearray(b"one"), dev)
    stack.input_handler(ProtocolType.IP, b"two", dev)
    stack.input_handler(ProtocolType.ARP, b"dropped", dev)
    assert received == []
    stack.softirq_handler()
    assert received == [(b"one", dev), (b"two", dev)]
    stack.softirq_handler()
    assert len(received) == 2


def test_timer_handler_respects_interval():
    stack = NetStack()
    fast, slow = [], []
    stack.register_timer("fast", 0.0, lambda: fast.append(1))
    stack.register_timer("slow", 1000.0, lambda: slow.append(1))
    time.sleep(0.01)
    stack.timer_handler()
    assert fast == [1]
    assert slow == []


def test_event_handler_calls_subscribers():
    stack = NetStack()
    seen = []
    stack.subscribe_event(seen.append, "a")
    stack.subscribe_event(seen.append, "b")
    stack.event_handler()
    assert sorted(seen) == ["a", "b"]


def test_run_opens_devices_and_dispatches():
    stack = NetStack()
    got = threading.Event()
    payload = []

    def handler(data, dev):
        payload.append(data)
        got.set()

    stack.register_protocol("IP", ProtocolType.IP, handler)
    good = stack.register_device(_device())
    bad = stack.register_device(_device(fail_open=True))
    stack.run()
    try:
        assert good.is_up()
        assert not bad.is_up()
        stack.input_handler(ProtocolType.IP, b"data", good)
        assert got.wait(2)
        assert payload == [b"data"]
    finally:
        stack.shutdown()
    assert not good.is_up()


def test_raise_event_reaches_subscriber_when_running():
    stack = NetStack()
    fired = threading.Event()
    stack.subscribe_event(lambda arg: fired.set(), None)
    stack.run()
    try:
        stack.interrupt()
        assert fired.wait(2)
    finally:
        stack.shutdown()