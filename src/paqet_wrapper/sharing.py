"""Expose the loopback SOCKS5 proxy to other devices on the LAN."""

import socket

import psutil

from .common.exceptions import RouteCommandError
from .common.logging import get_logger
from .common.process import LOOPBACK
from .models import SHARING_PORT, SOCKS_PORT, PortForward
from .network.interfaces import NetworkMutator
from .ports import PortArbiter

logger = get_logger(__name__)

FIREWALL_RULE_NAME = "Paqet SOCKS5 Sharing"
ALL_INTERFACES = "0.0.0.0"


class LanSharing:
    """Port-forward rule plus inbound firewall rule for the sharing port."""

    def __init__(
        self,
        mutator: NetworkMutator,
        arbiter: PortArbiter,
        socks_port: int = SOCKS_PORT,
        sharing_port: int = SHARING_PORT,
        rule_name: str = FIREWALL_RULE_NAME,
    ):
        self.mutator = mutator
        self.arbiter = arbiter
        self.socks_port = socks_port
        self.sharing_port = sharing_port
        self.rule_name = rule_name

    @property
    def forward(self) -> PortForward:
        return PortForward(
            listen_address=ALL_INTERFACES,
            listen_port=self.sharing_port,
            connect_address=LOOPBACK,
            connect_port=self.socks_port,
        )

    def is_enabled(self) -> bool:
        try:
            forwards = self.mutator.list_port_forwards()
        except RouteCommandError as e:
            logger.warning("Cannot read port forwarding rules", error=str(e))
            return False
        return any(
            f.listen_port == self.sharing_port and f.connect_port == self.socks_port
            for f in forwards
        )

    def enable(self) -> None:
        """Forward the sharing port to the SOCKS port and open the firewall.

        Raises:
            RouteCommandError: If a rule cannot be added (nothing is left behind)
        """
        if self.is_enabled():
            logger.debug("LAN sharing already enabled", port=self.sharing_port)
            return

        self.arbiter.reserve([self.sharing_port])
        try:
            self.mutator.add_port_forward(self.forward)
        except RouteCommandError:
            self.arbiter.release([self.sharing_port])
            raise

        try:
            self.mutator.add_firewall_rule(self.rule_name, self.sharing_port)
        except RouteCommandError:
            self.mutator.delete_port_forward(ALL_INTERFACES, self.sharing_port)
            self.arbiter.release([self.sharing_port])
            raise

        logger.info(
            "LAN sharing enabled",
            port=self.sharing_port,
            addresses=self.lan_addresses(),
        )

    def disable(self) -> None:
        """Remove both rules and release the sharing port; never raises."""
        try:
            self.mutator.delete_port_forward(ALL_INTERFACES, self.sharing_port)
        except RouteCommandError as e:
            logger.warning("Failed to remove sharing port forward", error=str(e))
        try:
            self.mutator.delete_firewall_rule(self.rule_name)
        except RouteCommandError as e:
            logger.warning("Failed to remove sharing firewall rule", error=str(e))
        self.arbiter.release([self.sharing_port])
        logger.info("LAN sharing disabled", port=self.sharing_port)

    @staticmethod
    def lan_addresses() -> list[str]:
        """Non-loopback IPv4 addresses other devices could connect to."""
        addresses = []
        for addrs in psutil.net_if_addrs().values():
            for addr in addrs:
                if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                    addresses.append(addr.address)
        return addresses
