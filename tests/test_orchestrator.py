"""Tests for the full-tunnel route orchestrator."""

import threading

import pytest

from paqet_wrapper.common.exceptions import (
    AdapterTimeoutError,
    BinaryMissingError,
    OperationCancelledError,
    RouteCommandError,
    TunnelNotReadyError,
)
from paqet_wrapper.models import Route, RouteState
from paqet_wrapper.network.orchestrator import NetworkRouteOrchestrator
from paqet_wrapper.settings import DnsSettings


@pytest.fixture
def orchestrator(fake_mutator, fake_bridge, fast_timeouts):
    return NetworkRouteOrchestrator(
        fake_mutator,
        fake_bridge,
        fast_timeouts,
        port_check=lambda port: True,
        host_resolver=lambda host: "198.51.100.7",
    )


class TestOrchestratorStart:
    """Forward sequence of a full-tunnel start."""

    def test_start_reaches_active(self, orchestrator, fake_mutator, fake_bridge):
        orchestrator.start("203.0.113.10:443", ("9.9.9.9", "149.112.112.112"))

        assert orchestrator.state == RouteState.ACTIVE
        assert orchestrator.is_active()
        assert fake_bridge.running
        assert fake_mutator.addresses["PaqetTun"] == ("10.0.85.2", "255.255.255.0")
        assert "PaqetTun" in fake_mutator.ipv6_disabled

    def test_server_host_route_uses_original_gateway(self, orchestrator, fake_mutator):
        orchestrator.start("203.0.113.10:443", ("1.1.1.1", "1.0.0.1"))

        route = fake_mutator.routes[("203.0.113.10", "255.255.255.255", "192.168.1.1")]
        assert route.metric == 1
        assert orchestrator.original_gateway == "192.168.1.1"

    def test_covering_routes_bound_to_adapter(self, orchestrator, fake_mutator):
        orchestrator.start("203.0.113.10:443", ("1.1.1.1", "1.0.0.1"))

        for destination in ("0.0.0.0", "128.0.0.0"):
            route = fake_mutator.routes[(destination, "128.0.0.0", "10.0.85.1")]
            assert route.interface_index == 42
            assert route.metric == 1

    def test_lan_routes_bypass_tunnel(self, orchestrator, fake_mutator):
        orchestrator.start("203.0.113.10:443", ("1.1.1.1", "1.0.0.1"))

        for destination, mask in (
            ("10.0.0.0", "255.0.0.0"),
            ("172.16.0.0", "255.240.0.0"),
            ("192.168.0.0", "255.255.0.0"),
            ("169.254.0.0", "255.255.0.0"),
        ):
            assert fake_mutator.routes[(destination, mask, "192.168.1.1")].metric == 5

    def test_dns_forced_on_every_adapter(self, orchestrator, fake_mutator):
        orchestrator.start("203.0.113.10:443", ("9.9.9.9", "149.112.112.112"))

        for name in ("PaqetTun", "Ethernet", "Wi-Fi"):
            assert fake_mutator.dns[name] == ["9.9.9.9", "149.112.112.112"]
        assert fake_mutator.flushes == 1

    def test_dns_settings_resolved_through_selector(self, orchestrator, fake_mutator):
        orchestrator.start("203.0.113.10", DnsSettings(provider="google"))

        assert fake_mutator.dns["Ethernet"] == ["8.8.8.8", "8.8.4.4"]

    def test_hostname_is_resolved(self, orchestrator, fake_mutator):
        orchestrator.start("vpn.example.com:8443", ("1.1.1.1", "1.0.0.1"))

        assert orchestrator.server_ip == "198.51.100.7"
        assert ("198.51.100.7", "255.255.255.255", "192.168.1.1") in fake_mutator.routes

    def test_unresolvable_host_fails_before_any_change(
        self, fake_mutator, fake_bridge, fast_timeouts
    ):
        def resolver(host):
            raise OSError("getaddrinfo failed")

        orchestrator = NetworkRouteOrchestrator(
            fake_mutator, fake_bridge, fast_timeouts,
            port_check=lambda port: True, host_resolver=resolver,
        )
        with pytest.raises(RouteCommandError, match="resolve server"):
            orchestrator.start("nowhere.invalid", ("1.1.1.1", "1.0.0.1"))
        assert fake_bridge.starts == 0

    def test_malformed_hostname_fails_before_any_change(
        self, fake_mutator, fake_bridge, fast_timeouts
    ):
        def resolver(host):
            # What socket.gethostbyname raises for an empty IDNA label
            raise UnicodeError("encoding with 'idna' codec failed")

        before = fake_mutator.snapshot()
        orchestrator = NetworkRouteOrchestrator(
            fake_mutator, fake_bridge, fast_timeouts,
            port_check=lambda port: True, host_resolver=resolver,
        )
        with pytest.raises(RouteCommandError, match="resolve server bad..host"):
            orchestrator.start("bad..host:443", ("1.1.1.1", "1.0.0.1"))
        assert fake_bridge.starts == 0
        assert fake_mutator.snapshot() == before

    def test_stale_default_route_removed(self, orchestrator, fake_mutator):
        stale = Route(destination="0.0.0.0", mask="0.0.0.0", gateway="10.0.85.1")
        fake_mutator.routes[("0.0.0.0", "0.0.0.0", "10.0.85.1")] = stale

        orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))

        assert ("0.0.0.0", "0.0.0.0", "10.0.85.1") not in fake_mutator.routes

    def test_state_transitions(self, fake_mutator, fake_bridge, fast_timeouts):
        states = []
        orchestrator = NetworkRouteOrchestrator(
            fake_mutator, fake_bridge, fast_timeouts,
            port_check=lambda port: True, on_state_changed=states.append,
        )

        orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))
        orchestrator.stop()

        assert states == [
            RouteState.ADAPTER_STARTING,
            RouteState.ADAPTER_UP,
            RouteState.ROUTES_APPLIED,
            RouteState.DNS_FORCED,
            RouteState.ACTIVE,
            RouteState.DNS_RESTORED,
            RouteState.ROUTES_REMOVED,
            RouteState.ADAPTER_STOPPED,
            RouteState.IDLE,
        ]


class TestOrchestratorPreflight:
    """Checks made before anything is changed."""

    def test_requires_live_socks_port(self, fake_mutator, fake_bridge, fast_timeouts):
        orchestrator = NetworkRouteOrchestrator(
            fake_mutator, fake_bridge, fast_timeouts, port_check=lambda port: False
        )

        with pytest.raises(TunnelNotReadyError):
            orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))
        assert fake_bridge.starts == 0
        assert fake_mutator.calls == []

    def test_requires_bridge_binaries(self, orchestrator, fake_bridge):
        fake_bridge.present = False

        with pytest.raises(BinaryMissingError):
            orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))
        assert fake_bridge.starts == 0

    def test_requires_default_gateway(self, orchestrator, fake_mutator, fake_bridge):
        fake_mutator.gateway = None

        with pytest.raises(RouteCommandError, match="default gateway"):
            orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))
        assert fake_bridge.starts == 0
        assert orchestrator.state == RouteState.IDLE

    def test_second_start_without_stop_is_rejected(self, orchestrator):
        orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))

        with pytest.raises(RouteCommandError, match="previous session"):
            orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))


class TestOrchestratorRollback:
    """Any failure leaves the host exactly as before the attempt."""

    def test_dns_failure_rolls_back_routes_and_bridge(
        self, orchestrator, fake_mutator, fake_bridge, route_failure
    ):
        before = fake_mutator.snapshot()
        original = fake_mutator.set_adapter_dns

        def flaky_set_dns(name, servers):
            if name == "Wi-Fi":
                raise route_failure("set DNS on Wi-Fi")
            original(name, servers)

        fake_mutator.set_adapter_dns = flaky_set_dns

        with pytest.raises(RouteCommandError, match="set DNS on Wi-Fi"):
            orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))

        assert fake_mutator.snapshot() == before
        assert fake_bridge.stops == 1
        assert not fake_bridge.running
        assert orchestrator.state == RouteState.IDLE
        assert len(orchestrator.changes) == 0

    def test_adapter_timeout_stops_bridge(self, fake_mutator, bridge_factory, fast_timeouts):
        bridge = bridge_factory(comes_up=False)
        orchestrator = NetworkRouteOrchestrator(
            fake_mutator, bridge, fast_timeouts, port_check=lambda port: True
        )
        before = fake_mutator.snapshot()

        with pytest.raises(AdapterTimeoutError):
            orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))

        assert bridge.stops == 1
        assert fake_mutator.snapshot() == before

    def test_route_failure_midway_removes_applied_routes(
        self, orchestrator, fake_mutator, route_failure
    ):
        before = fake_mutator.snapshot()
        original = fake_mutator.add_route
        added = []

        def flaky_add_route(route):
            if len(added) == 3:
                raise route_failure(f"add route {route.describe()}")
            added.append(route)
            return original(route)

        fake_mutator.add_route = flaky_add_route

        with pytest.raises(RouteCommandError):
            orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))

        assert len(added) == 3
        assert fake_mutator.snapshot() == before

    def test_preexisting_route_survives_rollback(self, orchestrator, fake_mutator):
        lan = Route(destination="10.0.0.0", mask="255.0.0.0", gateway="192.168.1.1", metric=5)
        fake_mutator.routes[("10.0.0.0", "255.0.0.0", "192.168.1.1")] = lan

        orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))
        orchestrator.stop()

        assert ("10.0.0.0", "255.0.0.0", "192.168.1.1") in fake_mutator.routes

    def test_static_dns_restored_and_dhcp_kept(self, orchestrator, fake_mutator):
        orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))
        orchestrator.stop()

        assert fake_mutator.dns["Wi-Fi"] == ["192.168.1.53"]
        assert fake_mutator.dns["Ethernet"] is None

    def test_cancel_mid_start_unwinds(self, orchestrator, fake_mutator):
        before = fake_mutator.snapshot()
        cancel = threading.Event()

        def progress(message):
            if message.startswith("Configuring routes"):
                cancel.set()

        with pytest.raises(OperationCancelledError):
            orchestrator.start(
                "203.0.113.10", ("1.1.1.1", "1.0.0.1"), cancel_event=cancel, progress=progress
            )

        assert fake_mutator.snapshot() == before
        assert orchestrator.state == RouteState.IDLE

    def test_inverse_failure_does_not_block_rest(
        self, orchestrator, fake_mutator, fake_bridge, route_failure
    ):
        orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))
        fake_mutator.fail_on["flush_dns_cache"] = route_failure("flush DNS cache")

        failures = orchestrator.stop()

        assert len(failures) == 1
        assert "flush DNS cache" in failures[0]
        assert not fake_bridge.running
        assert fake_mutator.routes == {}


class TestOrchestratorStop:
    """Stop is exact, idempotent and repeatable."""

    def test_stop_restores_pre_start_state(self, orchestrator, fake_mutator):
        before = fake_mutator.snapshot()

        orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))
        assert fake_mutator.snapshot() != before

        assert orchestrator.stop() == []
        assert fake_mutator.snapshot() == before
        assert orchestrator.state == RouteState.IDLE

    def test_second_stop_is_noop(self, orchestrator, fake_mutator, fake_bridge):
        orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))
        orchestrator.stop()
        calls = len(fake_mutator.calls)

        assert orchestrator.stop() == []
        assert len(fake_mutator.calls) == calls
        assert fake_bridge.stops == 1

    def test_cycles_leave_identical_state(self, orchestrator, fake_mutator):
        states = []
        for _ in range(2):
            orchestrator.start("203.0.113.10", ("1.1.1.1", "1.0.0.1"))
            orchestrator.stop()
            states.append(fake_mutator.snapshot())

        assert states[0] == states[1]
