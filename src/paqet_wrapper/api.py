"""High-level API for paqet wrapper.

Simple entry points for hosts that do not need the full TunnelManager surface.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from .common.exceptions import PaqetWrapperError
from .common.logging import get_logger
from .connectivity import check_tunnel_connectivity
from .manager import TunnelManager
from .models import SOCKS_PORT, ConnectionStatus, DnsBenchmarkResult
from .resolver import DnsResolverSelector
from .settings import ConnectionSettings

logger = get_logger(__name__)


def connect(settings: ConnectionSettings, **manager_kwargs: Any) -> TunnelManager:
    """Connect and return the manager that owns the connection.

    Example:
        >>> manager = connect(ConnectionSettings(config_path=path, server_address="1.2.3.4:443"))
        >>> manager.status
        <ConnectionStatus.CONNECTED: 'connected'>
        >>> manager.shutdown()
    """
    manager = TunnelManager(**manager_kwargs)
    try:
        manager.connect(settings)
    except PaqetWrapperError:
        manager.shutdown()
        raise
    return manager


@contextmanager
def managed_connection(
    settings: ConnectionSettings, **manager_kwargs: Any
) -> Iterator[TunnelManager]:
    """Connect for the duration of a with block.

    The host network and the tunnel process are restored on exit, even if
    the block raises.

    Args:
        settings: Connection settings
        **manager_kwargs: Passed to TunnelManager

    Yields:
        TunnelManager: Connected (or port pending) manager

    Example:
        >>> with managed_connection(settings) as manager:
        ...     print(manager.status)
        ConnectionStatus.CONNECTED
    """
    with TunnelManager(**manager_kwargs) as manager:
        status = manager.connect(settings)
        logger.info("Managed connection opened", status=status.value)
        try:
            yield manager
        finally:
            logger.info("Managed connection closing")
    if manager.status != ConnectionStatus.DISCONNECTED:
        logger.warning("Managed connection closed with status", status=manager.status.value)


def benchmark_dns(
    candidates: list[str] | None = None, timeout: float = 3.0
) -> list[DnsBenchmarkResult]:
    """Benchmark DNS servers, fastest first.

    Args:
        candidates: Server addresses; the built-in presets when None
        timeout: Per-query timeout in seconds
    """
    selector = DnsResolverSelector(timeout=timeout)
    if candidates is None:
        return selector.benchmark_presets()
    return selector.benchmark(candidates)


def check_connectivity(socks_port: int = SOCKS_PORT, timeout: float = 5.0) -> str | None:
    """Public exit IP seen through the tunnel, None when nothing answers.

    Example:
        >>> with managed_connection(settings):
        ...     print(check_connectivity())
        203.0.113.10
    """
    return check_tunnel_connectivity(socks_port, timeout=timeout)
