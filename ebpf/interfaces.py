"""Primary node interface discovery.

The primary interface is the local network interface that carries one of
the node's InternalIP addresses. tc and xdp specs that ask for
``primaryNodeInterface`` attach there.
"""

from __future__ import annotations

import fcntl
import logging
import socket
import struct

from agent.errors import TargetError
from agent.models import Node

logger = logging.getLogger(__name__)

SIOCGIFADDR = 0x8915


def interface_address(name: str) -> str | None:
    """IPv4 address of an interface, or None if it has none."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        ifreq = struct.pack("256s", name[:15].encode("utf-8"))
        result = fcntl.ioctl(sock.fileno(), SIOCGIFADDR, ifreq)
        return socket.inet_ntoa(result[20:24])
    except OSError as exc:
        # EADDRNOTAVAIL when no address is assigned
        logger.debug("No IPv4 address for %s: %s", name, exc)
        return None
    finally:
        sock.close()


def local_addresses() -> dict[str, str]:
    """Map of local interface name to IPv4 address."""
    addresses: dict[str, str] = {}
    for _, name in socket.if_nameindex():
        address = interface_address(name)
        if address is not None:
            addresses[name] = address
    return addresses


def primary_node_interface(node: Node) -> str:
    """Name of the interface holding one of the node's InternalIPs.

    Raises:
        TargetError: If the node has no InternalIP or no local interface
            carries one.
    """
    if not node.internal_ips:
        raise TargetError(f"node {node.name} reports no InternalIP address")

    wanted = set(node.internal_ips)
    for name, address in sorted(local_addresses().items()):
        if address in wanted:
            logger.debug("Primary interface of %s is %s (%s)", node.name, name, address)
            return name

    raise TargetError(
        f"no local interface carries an InternalIP of node {node.name} "
        f"({', '.join(node.internal_ips)})"
    )
