"""Shared pytest fixtures for paqet wrapper tests."""

import io
from unittest.mock import Mock

import pytest

from paqet_wrapper.common.exceptions import RouteCommandError
from paqet_wrapper.models import AdapterState, PortForward, PortOwner, ProxySettings, Route
from paqet_wrapper.settings import ConnectionSettings, InstallPaths, TimeoutConfig


DIRECT_WINHTTP = "Current WinHTTP proxy settings:\n\n    Direct access (no proxy server).\n"

class FakeNetworkMutator:
    """In-memory host network implementing the NetworkMutator protocol.

    Set ``fail_on[method] = exception`` to make a method raise.
    """

    def __init__(self, gateway="192.168.1.1"):
        self.gateway = gateway
        self.routes: dict[tuple[str, str, str], Route] = {}
        self.adapters = ["Ethernet", "Wi-Fi"]
        self.dns: dict[str, list[str] | None] = {"Ethernet": None, "Wi-Fi": ["192.168.1.53"]}
        self.adapter_up: dict[str, bool] = {}
        self.addresses: dict[str, tuple[str, str]] = {}
        self.ipv6_disabled: set[str] = set()
        self.excluded: dict[tuple[str, str], set[int]] = {
            (protocol, store): set()
            for protocol in ("tcp", "udp")
            for store in ("active", "persistent")
        }
        self.forwards: list[PortForward] = []
        self.firewall_rules: dict[str, int] = {}
        self.port_owners: dict[int, PortOwner] = {}
        self.interface_index: int | None = 42
        self.system_proxy = ProxySettings()
        self.winhttp = DIRECT_WINHTTP
        self.proxy_notifications = 0
        self.flushes = 0
        self.calls: list[str] = []
        self.fail_on: dict[str, Exception] = {}

    def _call(self, name):
        self.calls.append(name)
        error = self.fail_on.get(name)
        if error is not None:
            raise error

    def snapshot(self):
        """Comparable copy of everything a mutation can change."""
        return {
            "routes": sorted(self.routes),
            "dns": {name: tuple(servers) if servers else None for name, servers in sorted(self.dns.items())},
            "addresses": dict(sorted(self.addresses.items())),
            "ipv6_disabled": sorted(self.ipv6_disabled),
            "excluded": {key: sorted(ports) for key, ports in sorted(self.excluded.items())},
            "forwards": sorted(
                (f.listen_address, f.listen_port, f.connect_address, f.connect_port)
                for f in self.forwards
            ),
            "firewall": dict(sorted(self.firewall_rules.items())),
            "adapters_up": sorted(name for name, up in self.adapter_up.items() if up),
            "system_proxy": self.system_proxy,
            "winhttp": self.winhttp,
        }

    def remove_adapter(self, name):
        """What Windows does when the virtual adapter disappears."""
        self.adapter_up.pop(name, None)
        self.dns.pop(name, None)
        self.addresses.pop(name, None)
        self.ipv6_disabled.discard(name)

    # Adapters

    def get_default_gateway(self):
        self._call("get_default_gateway")
        return self.gateway

    def is_adapter_up(self, name):
        return self.adapter_up.get(name, False)

    def get_interface_index(self, name):
        self._call("get_interface_index")
        return self.interface_index

    def list_active_adapters(self):
        self._call("list_active_adapters")
        return self.adapters + [name for name, up in self.adapter_up.items() if up]

    def set_adapter_address(self, name, address, netmask):
        self._call("set_adapter_address")
        self.addresses[name] = (address, netmask)

    def disable_ipv6(self, name):
        self._call("disable_ipv6")
        self.ipv6_disabled.add(name)

    # Routes

    def add_route(self, route):
        self._call("add_route")
        key = (route.destination, route.mask, route.gateway)
        if key in self.routes:
            return False
        self.routes[key] = route
        return True

    def delete_route(self, route, persistent=False):
        self._call("delete_route")
        self.routes.pop((route.destination, route.mask, route.gateway), None)

    # DNS

    def get_adapter_dns(self, name):
        self._call("get_adapter_dns")
        servers = self.dns.get(name)
        return list(servers) if servers else None

    def set_adapter_dns(self, name, servers):
        self._call("set_adapter_dns")
        self.dns[name] = list(servers)

    def reset_adapter_dns(self, name):
        self._call("reset_adapter_dns")
        self.dns[name] = None

    def flush_dns_cache(self):
        self._call("flush_dns_cache")
        self.flushes += 1

    # Ports

    def list_excluded_ports(self, protocol, store):
        self._call("list_excluded_ports")
        return set(self.excluded[(protocol, store)])

    def add_excluded_port(self, port, protocol, store):
        self._call("add_excluded_port")
        self.excluded[(protocol, store)].add(port)

    def delete_excluded_port(self, port, protocol, store):
        self._call("delete_excluded_port")
        self.excluded[(protocol, store)].discard(port)

    def find_port_owner(self, port):
        return self.port_owners.get(port)

    def list_port_forwards(self):
        self._call("list_port_forwards")
        return list(self.forwards)

    def add_port_forward(self, forward):
        self._call("add_port_forward")
        self.forwards.append(forward)

    def delete_port_forward(self, listen_address, listen_port):
        self._call("delete_port_forward")
        self.forwards = [
            f
            for f in self.forwards
            if not (f.listen_address == listen_address and f.listen_port == listen_port)
        ]

    def add_firewall_rule(self, name, port):
        self._call("add_firewall_rule")
        self.firewall_rules[name] = port

    def delete_firewall_rule(self, name):
        self._call("delete_firewall_rule")
        self.firewall_rules.pop(name, None)

    # System proxy

    def get_system_proxy(self):
        self._call("get_system_proxy")
        return self.system_proxy

    def set_system_proxy(self, settings):
        self._call("set_system_proxy")
        self.system_proxy = settings
        self.proxy_notifications += 1

    def get_winhttp_proxy(self):
        self._call("get_winhttp_proxy")
        return self.winhttp

    def reset_winhttp_proxy(self):
        self._call("reset_winhttp_proxy")
        self.winhttp = DIRECT_WINHTTP


class FakeBridge:
    """Adapter bridge whose start brings the fake adapter up."""

    def __init__(self, mutator, adapter=None, comes_up=True):
        self.mutator = mutator
        self.adapter = adapter or AdapterState()
        self.comes_up = comes_up
        self.present = True
        self.running = False
        self.starts = 0
        self.stops = 0

    def binaries_present(self):
        return self.present

    def start(self):
        self.starts += 1
        self.running = True
        if self.comes_up:
            self.mutator.adapter_up[self.adapter.name] = True
        return 4242

    def stop(self):
        self.stops += 1
        self.running = False
        self.mutator.remove_adapter(self.adapter.name)


@pytest.fixture
def fake_mutator():
    return FakeNetworkMutator()


@pytest.fixture
def fake_bridge(fake_mutator):
    return FakeBridge(fake_mutator)


@pytest.fixture
def bridge_factory(fake_mutator):
    def factory(**kwargs):
        return FakeBridge(fake_mutator, **kwargs)

    return factory


@pytest.fixture
def fast_timeouts():
    """Timeouts short enough to keep polling tests quick."""
    return TimeoutConfig(
        readiness_timeout=0.2,
        readiness_interval=0.01,
        bind_retry_delay=0.0,
        slow_threshold=0.1,
        stop_timeout=0.1,
        stop_verify_timeout=0.05,
        stop_verify_interval=0.01,
        bridge_startup_delay=0.0,
        adapter_timeout=0.1,
        adapter_interval=0.01,
        adapter_teardown_timeout=0.05,
        port_release_timeout=0.05,
        port_release_interval=0.01,
    )


@pytest.fixture
def install_paths(tmp_path):
    """InstallPaths with every binary present."""
    paths = InstallPaths(data_dir=tmp_path / "PaqetTunnel")
    paths.bin_dir.mkdir(parents=True)
    paths.config_dir.mkdir(parents=True)
    for binary in (paths.paqet_binary, paths.tun2socks_binary, paths.wintun_dll):
        binary.touch()
    paths.config_path.write_text('role: "client"\n')
    return paths


@pytest.fixture
def connection_settings(install_paths):
    return ConnectionSettings(
        config_path=install_paths.config_path,
        server_address="203.0.113.10:443",
        key="s3cret-key",
        interface="Ethernet",
    )


def make_process(pid=12345, returncode=None, stdout="", stderr=""):
    """Popen stand-in with real text streams, so output readers terminate."""
    process = Mock()
    process.pid = pid
    process.poll.return_value = returncode
    process.wait.return_value = returncode
    process.stdout = io.StringIO(stdout)
    process.stderr = io.StringIO(stderr)
    return process


@pytest.fixture
def process_factory():
    return make_process


@pytest.fixture
def route_failure():
    """Factory for the error a failing OS command raises."""

    def factory(step="command", output="The requested operation requires elevation."):
        return RouteCommandError(step, output)

    return factory
