"""Connect/Disconnect control for the tunnel, full tunnel and LAN sharing."""

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from types import TracebackType
from typing import Literal

from .common.exceptions import (
    BinaryMissingError,
    OperationCancelledError,
    OperationInProgressError,
    PaqetWrapperError,
    RouteCommandError,
    StopNonConvergentError,
)
from .common.logging import get_logger
from .common.process import is_port_listening
from .connectivity import check_tunnel_connectivity
from .models import SOCKS_PORT, ConnectionStatus, TunnelState
from .network.bridge import AdapterBridge
from .network.interfaces import NetworkMutator
from .network.orchestrator import NetworkRouteOrchestrator
from .network.windows import WindowsNetworkMutator
from .ports import PortArbiter
from .process import ProcessSupervisor
from .proxy import SystemProxy
from .resolver import DnsResolverSelector
from .settings import ConnectionSettings, InstallPaths, TimeoutConfig
from .sharing import LanSharing

logger = get_logger(__name__)

StateCallback = Callable[[ConnectionStatus, str], None]
ProgressCallback = Callable[[str], None]


class TunnelManager:
    """Runs one Connect or Disconnect at a time on a background worker.

    Connect reserves the SOCKS port, starts the tunnel, and once the port is
    live applies the full tunnel and LAN sharing when requested. Disconnect
    cancels an in-flight Connect first, then tears everything down in
    reverse order.
    """

    def __init__(
        self,
        paths: InstallPaths | None = None,
        timeouts: TimeoutConfig | None = None,
        mutator: NetworkMutator | None = None,
        dns_selector: DnsResolverSelector | None = None,
        port_check: Callable[[int], bool] = is_port_listening,
        on_state_changed: StateCallback | None = None,
        on_progress: ProgressCallback | None = None,
        release_ports_on_disconnect: bool = True,
    ):
        self.paths = paths or InstallPaths()
        self.timeouts = timeouts or TimeoutConfig()
        self.mutator = mutator or WindowsNetworkMutator(self.timeouts)
        self.dns_selector = dns_selector or DnsResolverSelector()

        self.arbiter = PortArbiter(self.mutator, self.timeouts)
        self.supervisor = ProcessSupervisor(
            self.paths, self.arbiter, self.timeouts, port_check=port_check
        )
        self.bridge = AdapterBridge(self.paths, timeouts=self.timeouts)
        self.orchestrator = NetworkRouteOrchestrator(
            self.mutator,
            self.bridge,
            self.timeouts,
            dns_selector=self.dns_selector,
            port_check=port_check,
        )
        self.sharing = LanSharing(self.mutator, self.arbiter)
        self.system_proxy = SystemProxy(self.mutator)

        self.on_state_changed = on_state_changed
        self.on_progress = on_progress
        self.release_ports_on_disconnect = release_ports_on_disconnect

        self._status = ConnectionStatus.DISCONNECTED
        self._message = ""
        self._settings: ConnectionSettings | None = None
        self._sharing_enabled = False
        self._proxy_enabled = False
        self._operation_lock = threading.Lock()
        self._cancel = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tunnel-manager")

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def message(self) -> str:
        return self._message

    def is_connected(self) -> bool:
        return self._status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTED_SOCKS_ONLY)

    def _set_status(self, status: ConnectionStatus, message: str = "") -> None:
        self._status = status
        self._message = message
        logger.info("Connection status changed", status=status.value, message=message)
        if self.on_state_changed is not None:
            try:
                self.on_state_changed(status, message)
            except Exception as e:
                logger.warning("State callback failed", error=str(e))

    def _progress(self, message: str) -> None:
        logger.debug("Progress", message=message)
        if self.on_progress is not None:
            try:
                self.on_progress(message)
            except Exception as e:
                logger.warning("Progress callback failed", error=str(e))

    def connect(self, settings: ConnectionSettings) -> ConnectionStatus:
        """Bring the tunnel up; blocks until connected, pending or failed.

        Returns:
            CONNECTED, CONNECTED_SOCKS_ONLY (full tunnel failed and was rolled
            back), PORT_PENDING (process alive, port not yet live) or
            DISCONNECTED if a Disconnect cancelled this Connect

        Raises:
            OperationInProgressError: If another Connect or Disconnect is running
            PaqetWrapperError: Any start failure; status is ERROR
        """
        if not self._operation_lock.acquire(blocking=False):
            raise OperationInProgressError("A connect or disconnect is already running")

        try:
            self._settings = settings
            self._set_status(ConnectionStatus.CONNECTING, "Connecting...")
            try:
                # A disconnect queued behind this connect has already asked to cancel
                if self._cancel.is_set():
                    raise OperationCancelledError("Connect cancelled before start")

                missing = self.paths.missing_binaries(settings.full_tunnel)
                if missing:
                    names = ", ".join(path.name for path in missing)
                    raise BinaryMissingError(f"{names} not found. Run setup first.")

                self.arbiter.reserve([SOCKS_PORT])
                handle = self.supervisor.start(settings, self._cancel, self._progress)

                if handle.state != TunnelState.RUNNING:
                    self._set_status(ConnectionStatus.PORT_PENDING, handle.message)
                    return self._status

                return self._finish_connect(settings)
            except OperationCancelledError:
                logger.info("Connect cancelled")
                self._set_status(ConnectionStatus.DISCONNECTED, "Connect cancelled")
                return self._status
            except PaqetWrapperError as e:
                logger.error("Connect failed", error=str(e))
                self._set_status(ConnectionStatus.ERROR, str(e))
                raise
            except Exception as e:
                logger.exception("Unexpected error during connect")
                self._set_status(ConnectionStatus.ERROR, f"Unexpected error: {e}")
                raise
        finally:
            self._cancel.clear()
            self._operation_lock.release()

    def _finish_connect(self, settings: ConnectionSettings) -> ConnectionStatus:
        status = ConnectionStatus.CONNECTED
        message = "Connected"

        if settings.full_tunnel:
            try:
                self.orchestrator.start(
                    settings.server_address, settings.dns, self._cancel, self._progress
                )
                message = "Connected (full tunnel)"
            except OperationCancelledError:
                raise
            except PaqetWrapperError as e:
                logger.error("Full tunnel failed, keeping SOCKS5 proxy", error=str(e))
                status = ConnectionStatus.CONNECTED_SOCKS_ONLY
                message = f"Full tunnel failed: {e}. SOCKS5 proxy is still available."

        if settings.lan_sharing:
            try:
                self.sharing.enable()
                self._sharing_enabled = True
            except RouteCommandError as e:
                logger.warning("LAN sharing could not be enabled", error=str(e))
                message = f"{message}. LAN sharing failed: {e}"

        if settings.system_proxy and not self._proxy_enabled:
            try:
                self.system_proxy.enable()
                self._proxy_enabled = True
            except RouteCommandError as e:
                logger.warning("System proxy could not be enabled", error=str(e))
                message = f"{message}. System proxy failed: {e}"

        self._set_status(status, message)
        return status

    def refresh_status(self) -> ConnectionStatus:
        """Re-check port liveness and finish a pending Connect.

        A PORT_PENDING connection whose port has come up gets its full tunnel,
        LAN sharing and system proxy applied; a connection whose port died becomes ERROR.
        Does nothing while another operation is running.
        """
        if not self._operation_lock.acquire(blocking=False):
            return self._status

        try:
            ready = self.supervisor.is_ready()
            if self._status == ConnectionStatus.PORT_PENDING and ready and self._settings:
                try:
                    return self._finish_connect(self._settings)
                except OperationCancelledError:
                    return self._status
            if self.is_connected() and not ready:
                self._set_status(ConnectionStatus.ERROR, "Tunnel stopped responding")
            return self._status
        finally:
            self._operation_lock.release()

    def check_connectivity(self, timeout: float = 5.0) -> str | None:
        """Exit IP seen through the SOCKS5 proxy, None when nothing answers."""
        return check_tunnel_connectivity(SOCKS_PORT, timeout=timeout)

    def recover_stale_state(self) -> list[str]:
        """Clean up proxy settings a previous session left behind.

        Meant to run once at startup, before the first Connect.

        Raises:
            OperationInProgressError: If a Connect or Disconnect is running
        """
        if not self._operation_lock.acquire(blocking=False):
            raise OperationInProgressError("A connect or disconnect is already running")
        try:
            cleaned = self.system_proxy.cleanup_stale()
        finally:
            self._operation_lock.release()
        if cleaned:
            logger.info("Recovered stale state", cleaned=cleaned)
        return cleaned

    def disconnect(self) -> ConnectionStatus:
        """Tear everything down; cancels and waits for an in-flight Connect.

        Raises:
            StopNonConvergentError: If the tunnel process cannot be killed
        """
        self._cancel.set()
        with self._operation_lock:
            try:
                self._set_status(ConnectionStatus.DISCONNECTING, "Disconnecting...")
                self._progress("Disconnecting...")

                warnings = self.orchestrator.stop()

                if self._sharing_enabled:
                    self.sharing.disable()
                    self._sharing_enabled = False

                if self._proxy_enabled:
                    self.system_proxy.restore()
                    self._proxy_enabled = False

                try:
                    self.supervisor.stop()
                except StopNonConvergentError as e:
                    self._set_status(ConnectionStatus.ERROR, str(e))
                    raise

                if self.release_ports_on_disconnect:
                    self.arbiter.release([SOCKS_PORT])

                message = "Disconnected"
                if warnings:
                    message = f"Disconnected ({len(warnings)} cleanup steps failed)"
                self._set_status(ConnectionStatus.DISCONNECTED, message)
                return self._status
            finally:
                self._cancel.clear()

    def submit_connect(self, settings: ConnectionSettings) -> "Future[ConnectionStatus]":
        """Run connect on the background worker."""
        return self._executor.submit(self.connect, settings)

    def submit_disconnect(self) -> "Future[ConnectionStatus]":
        """Cancel any in-flight connect now, then disconnect on the worker."""
        self._cancel.set()
        return self._executor.submit(self.disconnect)

    def shutdown(self) -> None:
        """Disconnect and stop the background worker."""
        try:
            if self._status != ConnectionStatus.DISCONNECTED or self.supervisor.handle:
                self.disconnect()
        finally:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> "TunnelManager":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        """Context manager exit - disconnect and stop the worker.

        Returns:
            False to propagate any exception
        """
        try:
            self.shutdown()
        except PaqetWrapperError as e:
            logger.error("Error during context exit", error=str(e))
        return False
