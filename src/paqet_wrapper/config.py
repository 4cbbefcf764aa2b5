"""Configuration builder for the paqet client.yaml."""

import os
import tempfile
from pathlib import Path
from types import TracebackType
from typing import Any, Literal

import yaml

from .common.logging import get_logger
from .common.process import LOOPBACK
from .common.utils import split_host_port, validate_port
from .models import SOCKS_PORT
from .settings import ConnectionSettings

logger = get_logger(__name__)

KCP_MODES = ("normal", "fast", "fast2", "fast3", "manual")
KCP_CIPHERS = (
    "aes", "aes-128", "aes-128-gcm", "aes-192", "salsa20", "blowfish", "twofish",
    "cast5", "3des", "tea", "xtea", "xor", "sm4", "none",
)
LOG_LEVELS = ("none", "debug", "info", "warn", "error", "fatal")


class ConfigBuilder:
    """Builder for paqet client configuration files."""

    def __init__(self) -> None:
        """Initialize ConfigBuilder with client defaults."""
        self._server_addr: str | None = None
        self._log_level = "info"
        self._socks: dict[str, str] = {"listen": f"{LOOPBACK}:{SOCKS_PORT}"}
        self._network: dict[str, str] = {
            "interface": "",
            "guid": "",
            "addr": "",
            "router_mac": "",
        }
        self._kcp: dict[str, Any] = {"mode": "fast", "block": "aes", "key": ""}
        self._config_path: str | None = None
        self._owns_file = False

        logger.debug("ConfigBuilder initialized")

    @classmethod
    def from_settings(cls, settings: ConnectionSettings) -> "ConfigBuilder":
        """Builder pre-filled with server, key and interface from settings."""
        builder = cls().add_server(settings.server_address)
        builder.set_transport(key=settings.key)
        if settings.interface:
            builder.set_network(settings.interface)
        return builder

    def add_server(self, addr: str) -> "ConfigBuilder":
        """Set the tunnel server address.

        Args:
            addr: Server ``host:port`` (port defaults to 443)

        Returns:
            Self for method chaining

        Raises:
            ValueError: If address is empty or the port is invalid
        """
        if not addr or not addr.strip():
            raise ValueError("Server address cannot be empty")

        host, port = split_host_port(addr.strip())
        validate_port(port, "Server port")
        self._server_addr = f"[{host}]:{port}" if ":" in host else f"{host}:{port}"

        logger.debug("Server configuration added", addr=self._server_addr)
        return self

    def set_socks(
        self, port: int = SOCKS_PORT, username: str = "", password: str = ""
    ) -> "ConfigBuilder":
        """Loopback SOCKS5 listener, with optional credentials."""
        validate_port(port, "SOCKS port")
        self._socks = {"listen": f"{LOOPBACK}:{port}"}
        if username:
            self._socks["username"] = username
        if password:
            self._socks["password"] = password
        return self

    def set_network(
        self,
        interface: str,
        guid: str = "",
        ipv4_addr: str = "",
        router_mac: str = "",
    ) -> "ConfigBuilder":
        """Physical interface paqet captures packets on."""
        if not interface or not interface.strip():
            raise ValueError("Network interface cannot be empty")
        self._network = {
            "interface": interface.strip(),
            "guid": guid,
            "addr": ipv4_addr,
            "router_mac": router_mac,
        }
        return self

    def set_transport(
        self, key: str, mode: str = "fast", block: str = "aes", **tuning: int
    ) -> "ConfigBuilder":
        """KCP transport settings.

        Args:
            key: Pre-shared key
            mode: KCP mode
            block: Cipher
            **tuning: Extra integer KCP options such as mtu or rcvwnd

        Raises:
            ValueError: If mode or block is unknown
        """
        if mode not in KCP_MODES:
            raise ValueError(f"Unknown KCP mode: {mode}")
        if block not in KCP_CIPHERS:
            raise ValueError(f"Unknown cipher: {block}")
        self._kcp = {"mode": mode, "block": block, "key": key, **tuning}
        return self

    def set_log_level(self, level: str) -> "ConfigBuilder":
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        self._log_level = level
        return self

    def render(self) -> str:
        """YAML text of the configuration.

        Raises:
            ValueError: If server address not set
        """
        if not self._server_addr:
            raise ValueError("Server address not set. Call add_server() first.")

        config: dict[str, Any] = {
            "role": "client",
            "log": {"level": self._log_level},
            "socks5": [dict(self._socks)],
            "network": {
                "interface": self._network["interface"],
                "guid": self._network["guid"],
                "ipv4": {
                    "addr": self._network["addr"],
                    "router_mac": self._network["router_mac"],
                },
            },
            "server": {"addr": self._server_addr},
            "transport": {"protocol": "kcp", "kcp": dict(self._kcp)},
        }
        return yaml.safe_dump(config, default_flow_style=False, sort_keys=False)

    def build(self, path: str | Path | None = None) -> str:
        """Write the configuration file and return its path.

        Args:
            path: Destination; a temporary file (removed on cleanup) if None

        Returns:
            Path to the generated configuration file
        """
        content = self.render()

        if path is not None:
            target = Path(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            self._config_path = str(target)
            self._owns_file = False
            logger.info("Configuration file written", path=self._config_path)
            return self._config_path

        fd, temp_path = tempfile.mkstemp(suffix=".yaml", prefix="paqet_client_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

        self._config_path = temp_path
        self._owns_file = True
        logger.info("Configuration file built", path=self._config_path)
        return self._config_path

    def cleanup(self) -> None:
        """Remove the temporary configuration file, if this builder created one."""
        if self._owns_file and self._config_path and os.path.exists(self._config_path):
            try:
                os.unlink(self._config_path)
                logger.debug("Configuration file cleaned up", path=self._config_path)
            except OSError as e:
                logger.warning("Failed to cleanup config file", error=str(e))
        self._config_path = None
        self._owns_file = False

    def __enter__(self) -> "ConfigBuilder":
        logger.debug("Entering ConfigBuilder context")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        """Context manager exit - automatically cleanup.

        Returns:
            False to propagate any exception
        """
        logger.debug("Exiting ConfigBuilder context")
        try:
            self.cleanup()
        except OSError as e:
            logger.error("Error during context exit", error=str(e))
        return False
