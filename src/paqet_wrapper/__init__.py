"""Paqet Wrapper - Windows lifecycle manager for the paqet tunnel."""

from .api import benchmark_dns, check_connectivity, connect, managed_connection
from .binary import PaqetBinary
from .common.exceptions import (
    AdapterTimeoutError,
    BinaryMissingError,
    BindTimeoutError,
    ConfigurationError,
    OperationCancelledError,
    OperationInProgressError,
    PaqetWrapperError,
    PortConflictError,
    ProcessCrashedError,
    RouteCommandError,
    StopNonConvergentError,
    TunnelNotReadyError,
)
from .common.logging import get_logger, setup_logging
from .config import ConfigBuilder
from .connectivity import IP_CHECK_ENDPOINTS, check_tunnel_connectivity
from .manager import TunnelManager
from .models import (
    SHARING_PORT,
    SOCKS_PORT,
    AdapterState,
    ConflictAction,
    ConnectionStatus,
    DnsBenchmarkResult,
    ProxySettings,
    RouteState,
    StopOutcome,
    TunnelProcessHandle,
    TunnelState,
)
from .network import NetworkRouteOrchestrator, RouteChangeSet, WindowsNetworkMutator
from .ports import PortArbiter
from .process import ProcessSupervisor, is_bind_failure
from .proxy import SystemProxy
from .resolver import PROVIDERS, DnsResolverSelector
from .settings import ConnectionSettings, DnsSettings, InstallPaths, TimeoutConfig
from .sharing import LanSharing

# Setup logging on package initialization
setup_logging(level="INFO")

# Package level logger
logger = get_logger(__name__)

__version__ = "0.1.0"


__all__ = [
    # High-level API
    "connect",
    "managed_connection",
    "benchmark_dns",
    "check_connectivity",
    # Components
    "TunnelManager",
    "ProcessSupervisor",
    "PortArbiter",
    "NetworkRouteOrchestrator",
    "RouteChangeSet",
    "WindowsNetworkMutator",
    "DnsResolverSelector",
    "LanSharing",
    "SystemProxy",
    "check_tunnel_connectivity",
    "IP_CHECK_ENDPOINTS",
    "PaqetBinary",
    "ConfigBuilder",
    "is_bind_failure",
    "PROVIDERS",
    # Settings and models
    "ConnectionSettings",
    "DnsSettings",
    "InstallPaths",
    "TimeoutConfig",
    "AdapterState",
    "ConflictAction",
    "ConnectionStatus",
    "DnsBenchmarkResult",
    "ProxySettings",
    "RouteState",
    "StopOutcome",
    "TunnelProcessHandle",
    "TunnelState",
    "SOCKS_PORT",
    "SHARING_PORT",
    # Exceptions
    "PaqetWrapperError",
    "ConfigurationError",
    "BinaryMissingError",
    "PortConflictError",
    "BindTimeoutError",
    "ProcessCrashedError",
    "AdapterTimeoutError",
    "RouteCommandError",
    "StopNonConvergentError",
    "OperationCancelledError",
    "OperationInProgressError",
    "TunnelNotReadyError",
    # Logging
    "get_logger",
    "setup_logging",
]
