"""Fixed-port reservation and conflict resolution."""

import threading
from collections.abc import Iterable

from .common.exceptions import RouteCommandError
from .common.logging import get_logger
from .common.polling import poll_until
from .common.utils import validate_port
from .models import ConflictAction, PortOwner, PortReservation, ReservationHolder
from .network.interfaces import NetworkMutator
from .settings import PAQET_BINARY_NAME, TUN2SOCKS_BINARY_NAME, TimeoutConfig

logger = get_logger(__name__)

PROTOCOLS = ("tcp", "udp")
# Transient first, then the store that survives reboots
STORES = ("active", "persistent")

SELF_IMAGE_NAMES = frozenset({PAQET_BINARY_NAME.lower(), TUN2SOCKS_BINARY_NAME.lower()})

# OS services that host dynamic port-forwarding (portproxy) rules
FORWARDING_SERVICE_NAMES = frozenset({"svchost.exe"})


class PortArbiter:
    """Keeps the fixed ports out of the ephemeral range and decides who may hold them.

    The arbiter never kills a foreign process. The only corrective action it
    takes is deleting stale port-forwarding rules that make an OS service
    listen on one of our ports.
    """

    def __init__(
        self,
        mutator: NetworkMutator,
        timeouts: TimeoutConfig | None = None,
        self_image_names: Iterable[str] = SELF_IMAGE_NAMES,
    ):
        self.mutator = mutator
        self.timeouts = timeouts or TimeoutConfig()
        self.self_image_names = frozenset(name.lower() for name in self_image_names)
        self._reservations: dict[int, PortReservation] = {}
        self._lock = threading.Lock()

    @property
    def reservations(self) -> dict[int, PortReservation]:
        with self._lock:
            return dict(self._reservations)

    def is_reserved(self, port: int) -> bool:
        with self._lock:
            return port in self._reservations

    def owner_of(self, port: int) -> PortOwner | None:
        """Process currently listening on port, if any."""
        return self.mutator.find_port_owner(port)

    def reserve(self, ports: Iterable[int]) -> list[PortReservation]:
        """Exclude ports from ephemeral allocation for TCP and UDP.

        Exclusions that already exist are left as they are and mark the
        reservation as foreign. A failed exclusion command is logged; the
        logical reservation is still recorded so the supervisor can proceed.

        Args:
            ports: Ports to reserve

        Returns:
            Reservations for the requested ports
        """
        reservations = []
        for port in ports:
            validate_port(port)
            with self._lock:
                existing = self._reservations.get(port)
            if existing is not None:
                reservations.append(existing)
                continue

            reservation = PortReservation(port=port, protocols=PROTOCOLS)
            for protocol in PROTOCOLS:
                for store in STORES:
                    try:
                        if port in self.mutator.list_excluded_ports(protocol, store):
                            reservation.holder = ReservationHolder.FOREIGN
                            continue
                        self.mutator.add_excluded_port(port, protocol, store)
                        reservation.added.add((protocol, store))
                    except RouteCommandError as e:
                        logger.warning(
                            "Port exclusion failed",
                            port=port,
                            protocol=protocol,
                            store=store,
                            error=str(e),
                        )

            with self._lock:
                self._reservations[port] = reservation
            logger.info(
                "Port reserved",
                port=port,
                holder=reservation.holder.value,
                added=sorted(reservation.added),
            )
            reservations.append(reservation)
        return reservations

    def release(self, ports: Iterable[int], force: bool = False) -> None:
        """Undo reserve for ports.

        Args:
            ports: Ports to release
            force: Remove every exclusion of these ports, including ones this
                process did not add (uninstall)
        """
        for port in ports:
            with self._lock:
                reservation = self._reservations.pop(port, None)

            if force:
                targets = []
                for protocol in PROTOCOLS:
                    for store in STORES:
                        try:
                            if port in self.mutator.list_excluded_ports(protocol, store):
                                targets.append((protocol, store))
                        except RouteCommandError as e:
                            logger.warning("Cannot read port exclusions", port=port, error=str(e))
            elif reservation is not None:
                targets = sorted(reservation.added)
            else:
                logger.debug("Port not reserved, nothing to release", port=port)
                continue

            for protocol, store in targets:
                try:
                    self.mutator.delete_excluded_port(port, protocol, store)
                except RouteCommandError as e:
                    logger.warning(
                        "Failed to remove port exclusion",
                        port=port,
                        protocol=protocol,
                        store=store,
                        error=str(e),
                    )
            logger.info("Port released", port=port, removed=targets, force=force)

    def resolve_conflict(self, port: int) -> ConflictAction:
        """Decide what to do about whoever is listening on port."""
        owner = self.owner_of(port)
        if owner is None:
            return ConflictAction.NO_ACTION

        image = owner.name.lower()
        if image in self.self_image_names:
            logger.info("Port held by tunnel process", port=port, owner=owner.describe())
            return ConflictAction.NO_ACTION

        if image in FORWARDING_SERVICE_NAMES:
            return self._reclaim_from_service(port, owner)

        logger.warning(
            "Port is held by a foreign process, not touching it",
            port=port,
            owner=owner.describe(),
        )
        return ConflictAction.REPORT_TO_USER

    def _reclaim_from_service(self, port: int, owner: PortOwner) -> ConflictAction:
        logger.warning(
            "Port held by OS networking service, removing stale forwarding rules",
            port=port,
            owner=owner.describe(),
        )
        try:
            stale = [f for f in self.mutator.list_port_forwards() if f.listen_port == port]
        except RouteCommandError as e:
            logger.warning("Cannot read port forwarding rules", port=port, error=str(e))
            stale = []

        for forward in stale:
            try:
                self.mutator.delete_port_forward(forward.listen_address, forward.listen_port)
                logger.info(
                    "Removed stale port forward",
                    listen=f"{forward.listen_address}:{forward.listen_port}",
                )
            except RouteCommandError as e:
                logger.warning("Failed to remove port forward", port=port, error=str(e))

        released = poll_until(
            lambda: self.owner_of(port) is None,
            timeout=self.timeouts.port_release_timeout,
            interval=self.timeouts.port_release_interval,
        )
        if released:
            logger.info("Port reclaimed", port=port)
            return ConflictAction.RECLAIMED

        logger.warning("Port still held after removing forwarding rules", port=port)
        return ConflictAction.REPORT_TO_USER
