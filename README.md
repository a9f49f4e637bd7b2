# tinynet

tinynet is a small protocol stack that runs entirely in user space, in one
Python process. It models network devices and the layers above them:

- **Devices** (`tinynet.drivers`): a null device that drops everything, a dummy
  device that drops output and raises an interrupt for each frame, a loopback
  device that feeds its output back in as input, and Ethernet devices backed by
  a Linux TAP interface or a raw packet socket.
- **Ethernet** (`tinynet.ether`): address parsing and formatting, frame
  building with padding to the minimum size, and filtering of frames addressed
  to other hosts.
- **ARP** (`tinynet.arp`): address resolution with a 32-entry cache whose
  dynamic entries expire after 30 seconds; requests for our own address are
  answered.
- **IPv4** (`tinynet.ip`): interfaces, a routing table with longest-prefix
  match, a default gateway, header checksums and dispatch to upper protocols.
- **ICMP** (`tinynet.icmp`): echo requests are answered with echo replies, and
  any ICMP message can be sent with `Icmp.output`.

Received frames are queued per protocol and handled by a soft interrupt.
Device interrupts, timers (such as the ARP cache timer) and events are
dispatched by a background interrupt thread (`tinynet.platform.Interrupts`).

No third-party libraries are needed.

## Address helpers

```python
from tinynet.ether import ether_addr_pton, ether_addr_ntop
from tinynet.ip import ip_addr_pton, ip_addr_ntop, ip_endpoint_pton, ip_endpoint_ntop

mac = ether_addr_pton("00:00:5e:00:53:01")
print(ether_addr_ntop(mac))            # 00:00:5e:00:53:01

addr = ip_addr_pton("192.0.2.2")       # a 32-bit integer
print(ip_addr_ntop(addr))              # 192.0.2.2

endpoint = ip_endpoint_pton("192.0.2.2:7")
print(ip_endpoint_ntop(endpoint))      # 192.0.2.2:7
```

Malformed addresses and ports raise `ValueError`.

## Bringing up a stack

`tinynet.stack.net_init()` returns a `Stack` holding the device core
(`net`, a `NetStack`) and the `arp`, `ip` and `icmp` layers registered on it.
Device init functions take the `NetStack`. Used as a context manager, the
`Stack` starts the interrupt thread and opens every device, and closes them
again on exit.

```python
import logging

from tinynet.drivers.loopback import loopback_init
from tinynet.icmp import IcmpType
from tinynet.ip import ip_addr_pton, ip_iface_alloc
from tinynet.stack import net_init

logging.basicConfig(level=logging.DEBUG)

stack = net_init()
dev = loopback_init(stack.net)
iface = ip_iface_alloc("127.0.0.1", "255.0.0.0")
stack.ip.register_iface(dev, iface)

with stack:
    # An echo request to ourselves; the loopback device delivers it back
    # and ICMP answers it with an echo reply.
    stack.icmp.output(IcmpType.ECHO, 0, 0x00010001, b"ping", iface.unicast,
                      ip_addr_pton("127.0.0.1"))
```

For an Ethernet device, use
`tinynet.drivers.ether_tap.ether_tap_init(stack.net, "tap0", "00:00:5e:00:53:01")`
(or `ether_pcap_init` from `tinynet.drivers.ether_pcap` for a raw packet
socket), register an interface on it, and add a default route with
`stack.ip.set_default_gateway(iface, "192.0.2.1")`. When no hardware address
is given, the interface's own address is read when the device is opened.

`Ip.output(protocol, data, src, dst)` routes and sends a datagram and returns
the payload length. While ARP resolution of the next hop is still pending the
datagram is dropped and a request is sent; a later send goes through once the
reply has been cached.

Failures raise exceptions: `NetError` for devices and the core, `IpError` for
IP and ICMP, `ArpError` for ARP and `IrqConflictError` for interrupt
registration. Diagnostics, including packet dumps at debug level, go through
the standard `logging` module.

## Requirements

The TAP and packet-socket devices need Linux and the privileges to open
`/dev/net/tun` or a raw packet socket. The null, dummy and loopback devices
work anywhere.

## What this package does not do

- There is no UDP or TCP, and no socket-style API for applications.
- There are no command-line programs; the stack is used as a library.
- IP fragments are rejected rather than reassembled, and outgoing datagrams
  larger than the device MTU are refused.
- IPv6 has type constants but no implementation.

## Tests

```
pip install -e .[test]
pytest
```