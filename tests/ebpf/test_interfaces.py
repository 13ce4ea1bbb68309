"""Tests for primary node interface discovery."""

from __future__ import annotations

import pytest

from agent.errors import TargetError
from agent.models import Node
from ebpf import interfaces


class TestPrimaryNodeInterface:
    """Test matching InternalIPs against local interface addresses."""

    def test_matching_interface(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """The interface holding the node IP is chosen."""
        monkeypatch.setattr(
            interfaces, "local_addresses", lambda: {"lo": "127.0.0.1", "eth0": "10.0.0.5", "eth1": "192.168.1.2"}
        )
        node = Node(name="node-1", internal_ips=["10.0.0.5"])
        assert interfaces.primary_node_interface(node) == "eth0"

    def test_no_internal_ip(self) -> None:
        """A node without an InternalIP is an error."""
        with pytest.raises(TargetError, match="no InternalIP"):
            interfaces.primary_node_interface(Node(name="node-1"))

    def test_no_local_match(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """No local interface with the node IP is an error."""
        monkeypatch.setattr(interfaces, "local_addresses", lambda: {"lo": "127.0.0.1"})
        with pytest.raises(TargetError, match="no local interface"):
            interfaces.primary_node_interface(Node(name="node-1", internal_ips=["10.0.0.5"]))

    def test_local_addresses_skips_unaddressed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Interfaces without an IPv4 address are skipped."""
        monkeypatch.setattr(interfaces.socket, "if_nameindex", lambda: [(1, "lo"), (2, "veth0")])
        monkeypatch.setattr(
            interfaces, "interface_address", lambda name: "127.0.0.1" if name == "lo" else None
        )
        assert interfaces.local_addresses() == {"lo": "127.0.0.1"}
