"""A small user-space protocol stack: network devices, Ethernet, ARP, IPv4 and ICMP."""

__version__ = "0.1.0"