"""Point the per-user system proxy at the tunnel's SOCKS5 listener."""

from .common.exceptions import RouteCommandError
from .common.logging import get_logger
from .common.process import LOOPBACK
from .models import SOCKS_PORT, ProxySettings
from .network.interfaces import NetworkMutator

logger = get_logger(__name__)

# Private ranges and the local intranet never go through the tunnel
DEFAULT_BYPASS = (
    "localhost;127.*;10.*;172.16.*;172.17.*;172.18.*;172.19.*;172.2?.*;"
    "172.30.*;172.31.*;192.168.*;<local>"
)
LEGACY_SOCKS_PORT = 1080
ALTERNATE_SOCKS_PORT = 10808


class SystemProxy:
    """Switches WinINet to the tunnel and puts the previous settings back."""

    def __init__(
        self,
        mutator: NetworkMutator,
        socks_port: int = SOCKS_PORT,
        bypass: str = DEFAULT_BYPASS,
    ):
        self.mutator = mutator
        self.socks_port = socks_port
        self.bypass = bypass
        self._saved: ProxySettings | None = None

    @property
    def server(self) -> str:
        return f"socks={LOOPBACK}:{self.socks_port}"

    def _points_at_tunnel(self, server: str | None) -> bool:
        if not server:
            return False
        return any(f":{port}" in server for port in (self.socks_port, LEGACY_SOCKS_PORT))

    def is_enabled(self) -> bool:
        try:
            current = self.mutator.get_system_proxy()
        except RouteCommandError as e:
            logger.warning("Cannot read system proxy", error=str(e))
            return False
        return current.enabled and current.server == self.server

    def enable(self) -> None:
        """Save the current settings once, then route WinINet through SOCKS5.

        Raises:
            RouteCommandError: If the settings cannot be written (previous
                settings are put back)
        """
        if self._saved is None:
            self._saved = self.mutator.get_system_proxy()
            logger.debug(
                "Saved system proxy",
                enabled=self._saved.enabled,
                server=self._saved.server,
            )

        try:
            self.mutator.set_system_proxy(
                ProxySettings(enabled=True, server=self.server, override=self.bypass)
            )
        except RouteCommandError:
            self.restore()
            raise
        logger.info("System proxy enabled", server=self.server)

    def restore(self) -> None:
        """Put back the settings saved by enable; never raises."""
        if self._saved is None:
            return
        saved = self._saved
        try:
            self.mutator.set_system_proxy(saved)
        except RouteCommandError as e:
            logger.warning("Failed to restore system proxy", error=str(e))
            return
        self._saved = None
        logger.info("System proxy restored", enabled=saved.enabled, server=saved.server)

    def cleanup_stale(self) -> list[str]:
        """Undo proxy settings left behind by a session that never shut down.

        Clears a WinINet proxy pointing at a local SOCKS port, resets a
        WinHTTP proxy pointing at one, and deletes port forwards listening
        on the SOCKS ports. Each step is independent; failures are logged.

        Returns:
            Descriptions of what was cleaned
        """
        cleaned: list[str] = []

        try:
            current = self.mutator.get_system_proxy()
            if current.enabled and self._points_at_tunnel(current.server):
                logger.info("Clearing stale system proxy", server=current.server)
                self.mutator.set_system_proxy(
                    current.model_copy(update={"enabled": False, "server": None})
                )
                cleaned.append(f"system proxy {current.server}")
        except RouteCommandError as e:
            logger.warning("Stale system proxy check failed", error=str(e))

        try:
            winhttp = self.mutator.get_winhttp_proxy()
            stale_ports = (self.socks_port, LEGACY_SOCKS_PORT, ALTERNATE_SOCKS_PORT)
            if any(f":{port}" in winhttp for port in stale_ports):
                logger.info("Resetting stale WinHTTP proxy")
                self.mutator.reset_winhttp_proxy()
                cleaned.append("WinHTTP proxy")
        except RouteCommandError as e:
            logger.warning("Stale WinHTTP proxy check failed", error=str(e))

        try:
            for forward in self.mutator.list_port_forwards():
                if forward.listen_port not in (self.socks_port, LEGACY_SOCKS_PORT):
                    continue
                logger.info(
                    "Deleting stale port forward",
                    listen_address=forward.listen_address,
                    listen_port=forward.listen_port,
                )
                self.mutator.delete_port_forward(forward.listen_address, forward.listen_port)
                cleaned.append(f"port forward {forward.listen_address}:{forward.listen_port}")
        except RouteCommandError as e:
            logger.warning("Stale port forward cleanup failed", error=str(e))

        return cleaned
