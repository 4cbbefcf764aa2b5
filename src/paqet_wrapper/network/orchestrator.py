"""Full-tunnel routing: adapter bridge, routes and forced DNS as one reversible unit."""

import socket
import threading
from collections.abc import Callable
from functools import partial

from ..common.exceptions import (
    AdapterTimeoutError,
    BinaryMissingError,
    OperationCancelledError,
    RouteCommandError,
    TunnelNotReadyError,
)
from ..common.logging import get_logger
from ..common.polling import poll_until
from ..common.process import is_port_listening
from ..common.utils import is_ipv4, split_host_port
from ..models import (
    COVERING_ROUTES,
    DEFAULT_ROUTE,
    HOST_MASK,
    LAN_ROUTE_METRIC,
    LAN_ROUTES,
    SERVER_ROUTE_METRIC,
    SOCKS_PORT,
    AdapterState,
    Route,
    RouteState,
)
from ..resolver import DnsResolverSelector
from ..settings import DnsSettings, TimeoutConfig
from .bridge import AdapterBridge
from .changeset import RouteChangeSet
from .interfaces import NetworkMutator

logger = get_logger(__name__)

ProgressCallback = Callable[[str], None]

# State reached once every entry of a phase has been reverted
_REVERSE_STATE = {
    RouteState.DNS_FORCED: RouteState.DNS_RESTORED,
    RouteState.ROUTES_APPLIED: RouteState.ROUTES_REMOVED,
    RouteState.ADAPTER_STARTING: RouteState.ADAPTER_STOPPED,
}


class NetworkRouteOrchestrator:
    """Captures all traffic into the virtual adapter and reverts it exactly.

    Every mutation applied during ``start`` has its inverse recorded on a
    RouteChangeSet. Any failure, including cancellation, unwinds the set
    before the error propagates, so the host is never left with a black-holed
    default route.
    """

    def __init__(
        self,
        mutator: NetworkMutator,
        bridge: AdapterBridge,
        timeouts: TimeoutConfig | None = None,
        adapter: AdapterState | None = None,
        dns_selector: DnsResolverSelector | None = None,
        socks_port: int = SOCKS_PORT,
        port_check: Callable[[int], bool] = is_port_listening,
        host_resolver: Callable[[str], str] = socket.gethostbyname,
        on_state_changed: Callable[[RouteState], None] | None = None,
    ):
        self.mutator = mutator
        self.bridge = bridge
        self.timeouts = timeouts or TimeoutConfig()
        self.adapter = adapter or bridge.adapter
        self.dns_selector = dns_selector or DnsResolverSelector()
        self.socks_port = socks_port
        self._port_check = port_check
        self._host_resolver = host_resolver
        self._on_state_changed = on_state_changed

        self._changes = RouteChangeSet()
        self._state = RouteState.IDLE
        self._lock = threading.RLock()
        self.original_gateway: str | None = None
        self.server_ip: str | None = None

    @property
    def state(self) -> RouteState:
        return self._state

    @property
    def changes(self) -> RouteChangeSet:
        return self._changes

    def is_active(self) -> bool:
        return self._state == RouteState.ACTIVE

    def _set_state(self, state: RouteState) -> None:
        if state == self._state:
            return
        logger.debug("Route state changed", previous=self._state.value, state=state.value)
        self._state = state
        if self._on_state_changed is not None:
            self._on_state_changed(state)

    def start(
        self,
        server_address: str,
        dns: DnsSettings | tuple[str, str] | None = None,
        cancel_event: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Bring up the adapter, capture all traffic and force DNS.

        Args:
            server_address: Tunnel server host[:port]; its host keeps a direct route
            dns: DNS choice, or an explicit (primary, secondary) pair
            cancel_event: Set by a concurrent stop request
            progress: Receives human readable step messages

        Raises:
            TunnelNotReadyError: If the SOCKS port is not accepting connections
            BinaryMissingError: If the adapter bridge is not installed
            AdapterTimeoutError: If the adapter does not come up in time
            RouteCommandError: If any mutation fails (already rolled back)
            OperationCancelledError: If cancelled (already rolled back)
        """
        notify = progress or (lambda _message: None)

        with self._lock:
            if self._changes or self._state != RouteState.IDLE:
                raise RouteCommandError(
                    "start full tunnel", "previous session has not been stopped"
                )
            if not self._port_check(self.socks_port):
                raise TunnelNotReadyError(
                    f"SOCKS5 port {self.socks_port} is not accepting connections"
                )
            if not self.bridge.binaries_present():
                raise BinaryMissingError("tun2socks.exe or wintun.dll not found. Run setup first.")

            servers = self._dns_servers(dns)
            self.server_ip = self._resolve_server(server_address)

            self._remove_stale_default_route()
            gateway = self.mutator.get_default_gateway()
            if not gateway:
                raise RouteCommandError("read default gateway", "no IPv4 default route found")
            self.original_gateway = gateway
            logger.info(
                "Starting full tunnel",
                server=self.server_ip,
                gateway=gateway,
                dns=servers,
            )

            try:
                self._bring_up_adapter(cancel_event, notify)
                self._check_cancelled(cancel_event)
                self._configure_adapter()
                self._check_cancelled(cancel_event)
                self._apply_routes(self.server_ip, gateway, cancel_event, notify)
                self._check_cancelled(cancel_event)
                self._force_dns(servers, notify)
                self._check_cancelled(cancel_event)
            except Exception as e:
                logger.error("Full tunnel setup failed, rolling back", error=str(e))
                notify("Full tunnel failed, restoring network...")
                self._rollback()
                raise

            self._set_state(RouteState.ACTIVE)
            notify("Full tunnel active")
            logger.info("Full tunnel active", changes=len(self._changes))

    def stop(self) -> list[str]:
        """Revert every recorded mutation; safe to call repeatedly.

        Returns:
            Messages of the inverse steps that failed (empty when clean)
        """
        with self._lock:
            if not self._changes and self._state == RouteState.IDLE:
                logger.debug("Full tunnel already stopped")
                return []
            logger.info("Stopping full tunnel", changes=len(self._changes))
            failures = self._rollback()
            if failures:
                logger.warning("Full tunnel stopped with errors", failures=failures)
            else:
                logger.info("Full tunnel stopped")
            return failures

    # Start steps

    def _dns_servers(self, dns: DnsSettings | tuple[str, str] | None) -> list[str]:
        if isinstance(dns, tuple):
            return [server for server in dns if server]
        return list(self.dns_selector.resolve(dns or DnsSettings()))

    def _resolve_server(self, server_address: str) -> str:
        host, _port = split_host_port(server_address)
        if is_ipv4(host):
            return host
        try:
            resolved = self._host_resolver(host)
        except (OSError, UnicodeError) as e:
            raise RouteCommandError(f"resolve server {host}", str(e)) from e
        logger.debug("Resolved server address", host=host, address=resolved)
        return resolved

    def _remove_stale_default_route(self) -> None:
        stale = Route(
            destination=DEFAULT_ROUTE[0], mask=DEFAULT_ROUTE[1], gateway=self.adapter.gateway
        )
        for persistent in (False, True):
            try:
                self.mutator.delete_route(stale, persistent=persistent)
            except RouteCommandError as e:
                logger.debug("Stale default route cleanup skipped", error=str(e))

    def _bring_up_adapter(
        self, cancel_event: threading.Event | None, notify: ProgressCallback
    ) -> None:
        self._set_state(RouteState.ADAPTER_STARTING)
        notify("Starting virtual adapter...")
        self._changes.apply(
            "adapter bridge",
            RouteState.ADAPTER_STARTING,
            self.bridge.start,
            self.bridge.stop,
        )

        name = self.adapter.name
        up = poll_until(
            lambda: self.mutator.is_adapter_up(name),
            timeout=self.timeouts.adapter_timeout,
            interval=self.timeouts.adapter_interval,
            cancel_event=cancel_event,
        )
        if not up:
            raise AdapterTimeoutError(
                f"{name} adapter did not come up within {self.timeouts.adapter_timeout:g}s"
            )
        self._set_state(RouteState.ADAPTER_UP)
        logger.info("Adapter up", adapter=name)

    def _configure_adapter(self) -> None:
        # No gateway on the address; the covering routes carry it
        self.mutator.set_adapter_address(self.adapter.name, self.adapter.address, self.adapter.netmask)
        try:
            self.mutator.disable_ipv6(self.adapter.name)
        except RouteCommandError as e:
            logger.warning("Could not disable IPv6 on adapter", error=str(e))

    def _add_route(self, route: Route) -> None:
        if self.mutator.add_route(route):
            self._changes.push(
                f"route {route.describe()}",
                RouteState.ROUTES_APPLIED,
                partial(self.mutator.delete_route, route),
            )

    def _apply_routes(
        self,
        server_ip: str,
        gateway: str,
        cancel_event: threading.Event | None,
        notify: ProgressCallback,
    ) -> None:
        notify("Configuring routes...")
        index = self.mutator.get_interface_index(self.adapter.name)
        if index is None:
            raise RouteCommandError("read adapter interface index", self.adapter.name)

        routes = [
            Route(destination=server_ip, mask=HOST_MASK, gateway=gateway, metric=SERVER_ROUTE_METRIC)
        ]
        routes += [
            Route(
                destination=destination,
                mask=mask,
                gateway=self.adapter.gateway,
                metric=self.adapter.metric,
                interface_index=index,
            )
            for destination, mask in COVERING_ROUTES
        ]
        routes += [
            Route(destination=destination, mask=mask, gateway=gateway, metric=LAN_ROUTE_METRIC)
            for destination, mask in LAN_ROUTES
        ]

        for route in routes:
            self._check_cancelled(cancel_event)
            self._add_route(route)

        self._set_state(RouteState.ROUTES_APPLIED)
        logger.info("Routes applied", routes=len(routes), interface_index=index)

    def _restore_dns(self, name: str, original: list[str] | None) -> None:
        if original:
            self.mutator.set_adapter_dns(name, original)
        else:
            self.mutator.reset_adapter_dns(name)

    def _force_dns(self, servers: list[str], notify: ProgressCallback) -> None:
        notify("Forcing DNS...")
        # Runs last when the DNS phase is reverted
        self._changes.push("flush DNS cache", RouteState.DNS_FORCED, self.mutator.flush_dns_cache)

        adapters = [self.adapter.name]
        adapters += [a for a in self.mutator.list_active_adapters() if a != self.adapter.name]
        for name in adapters:
            original = None if name == self.adapter.name else self.mutator.get_adapter_dns(name)
            # Pushed before the change: a half-applied server list is still reverted
            self._changes.push(
                f"DNS on {name}",
                RouteState.DNS_FORCED,
                partial(self._restore_dns, name, original),
            )
            self.mutator.set_adapter_dns(name, servers)
            logger.debug("DNS forced", adapter=name, servers=servers, original=original)

        self.mutator.flush_dns_cache()
        self._set_state(RouteState.DNS_FORCED)

    # Teardown

    def _check_cancelled(self, cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Full tunnel setup cancelled")

    def _rollback(self) -> list[str]:
        failures = self._changes.unwind(
            on_phase_done=lambda phase: self._set_state(_REVERSE_STATE.get(phase, self._state))
        )
        self._remove_stale_default_route()
        poll_until(
            lambda: not self.mutator.is_adapter_up(self.adapter.name),
            timeout=self.timeouts.adapter_teardown_timeout,
            interval=self.timeouts.adapter_interval,
        )
        self.original_gateway = None
        self._set_state(RouteState.IDLE)
        return failures
