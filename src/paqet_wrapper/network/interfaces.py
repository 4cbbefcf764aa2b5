"""Network mutation interface.

The orchestrator, the port arbiter and LAN sharing only talk to the host
through this protocol, so their ordering and rollback logic can run against
an in-memory implementation in tests.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from ..models import PortForward, PortOwner, ProxySettings, Route


class NetworkMutator(Protocol):
    """Host routing, DNS and port primitives."""

    # Adapters

    def get_default_gateway(self) -> str | None:
        """IPv4 gateway of the current default route."""
        ...

    def is_adapter_up(self, name: str) -> bool:
        """Whether the named adapter exists and is operationally up."""
        ...

    def get_interface_index(self, name: str) -> int | None:
        """IPv4 interface index of the named adapter."""
        ...

    def list_active_adapters(self) -> list[str]:
        """Names of adapters that are up, loopback excluded."""
        ...

    def set_adapter_address(self, name: str, address: str, netmask: str) -> None:
        """Assign a static address and mask without a gateway."""
        ...

    def disable_ipv6(self, name: str) -> None:
        """Unbind IPv6 from the named adapter."""
        ...

    # Routes

    def add_route(self, route: Route) -> bool:
        """Add a route. Returns False if an identical route already existed."""
        ...

    def delete_route(self, route: Route, persistent: bool = False) -> None:
        """Delete a route, optionally from the persistent store."""
        ...

    # DNS

    def get_adapter_dns(self, name: str) -> list[str] | None:
        """Statically configured DNS servers, None when DHCP supplies them."""
        ...

    def set_adapter_dns(self, name: str, servers: list[str]) -> None:
        """Force static DNS servers on the adapter, in order."""
        ...

    def reset_adapter_dns(self, name: str) -> None:
        """Return the adapter's DNS to DHCP."""
        ...

    def flush_dns_cache(self) -> None:
        """Flush the resolver cache."""
        ...

    # Ports

    def list_excluded_ports(self, protocol: str, store: str) -> set[int]:
        """Ports excluded from ephemeral allocation in a store."""
        ...

    def add_excluded_port(self, port: int, protocol: str, store: str) -> None:
        """Exclude a single port in the given store (active or persistent)."""
        ...

    def delete_excluded_port(self, port: int, protocol: str, store: str) -> None:
        """Remove a single-port exclusion from a store."""
        ...

    def find_port_owner(self, port: int) -> PortOwner | None:
        """Process with a listening TCP socket on port, if any."""
        ...

    def list_port_forwards(self) -> list[PortForward]:
        """OS-hosted v4-to-v4 forwarding rules."""
        ...

    def add_port_forward(self, forward: PortForward) -> None:
        ...

    def delete_port_forward(self, listen_address: str, listen_port: int) -> None:
        ...

    def add_firewall_rule(self, name: str, port: int) -> None:
        """Allow inbound TCP on port under a named rule."""
        ...

    def delete_firewall_rule(self, name: str) -> None:
        ...

    # System proxy

    def get_system_proxy(self) -> ProxySettings:
        """Current per-user WinINet proxy settings."""
        ...

    def set_system_proxy(self, settings: ProxySettings) -> None:
        """Write the WinINet proxy settings and notify running applications."""
        ...

    def get_winhttp_proxy(self) -> str:
        """Raw output describing the machine-wide WinHTTP proxy."""
        ...

    def reset_winhttp_proxy(self) -> None:
        """Switch WinHTTP back to direct access."""
        ...
