"""Data models and fixed contract values shared across components."""

import subprocess
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

# These must match the external binaries' own defaults
SOCKS_PORT = 10800
SHARING_PORT = SOCKS_PORT + 1

SERVER_ROUTE_METRIC = 1
LAN_ROUTE_METRIC = 5

HOST_MASK = "255.255.255.255"
DEFAULT_ROUTE = ("0.0.0.0", "0.0.0.0")
COVERING_ROUTES = (
    ("0.0.0.0", "128.0.0.0"),
    ("128.0.0.0", "128.0.0.0"),
)
LAN_ROUTES = (
    ("10.0.0.0", "255.0.0.0"),
    ("172.16.0.0", "255.240.0.0"),
    ("192.168.0.0", "255.255.0.0"),
    ("169.254.0.0", "255.255.0.0"),
)


class TunnelState(str, Enum):
    """Lifecycle of the tunnel subprocess."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


class StopOutcome(str, Enum):
    STOPPED = "stopped"
    ALREADY_STOPPED = "already_stopped"


class TunnelProcessHandle(BaseModel):
    """A launched (or adopted) tunnel subprocess.

    Owned by exactly one ProcessSupervisor. ``state == RUNNING`` is only set
    after the SOCKS port was seen accepting connections.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)

    pid: int = Field(ge=0, description="OS process id")
    port: int = Field(ge=1, le=65535, description="SOCKS listen port")
    state: TunnelState = Field(default=TunnelState.STARTING)
    attempt: int = Field(default=1, ge=1, description="Launch attempt number")
    message: str = Field(default="", description="Last status message")
    started_at: datetime = Field(default_factory=datetime.now)

    _process: subprocess.Popen[str] | None = PrivateAttr(default=None)
    _output: Any = PrivateAttr(default=None)

    @property
    def process(self) -> subprocess.Popen[str] | None:
        return self._process

    @property
    def output(self) -> Any:
        """OutputCapture of the subprocess, None for adopted processes."""
        return self._output

    @property
    def adopted(self) -> bool:
        return self._process is None

    def attach(self, process: subprocess.Popen[str] | None, output: Any) -> "TunnelProcessHandle":
        self._process = process
        self._output = output
        return self

    def output_tail(self, lines: int = 20) -> str:
        if self._output is None:
            return ""
        return str(self._output.tail(lines))


class AdapterState(BaseModel):
    """Install-time constants of the virtual adapter."""

    model_config = ConfigDict(frozen=True)

    name: str = "PaqetTun"
    address: str = "10.0.85.2"
    gateway: str = "10.0.85.1"
    netmask: str = "255.255.255.0"
    metric: int = 1

    @property
    def cidr(self) -> str:
        return f"{self.address}/24"


class Route(BaseModel):
    """An IPv4 route entry."""

    model_config = ConfigDict(frozen=True)

    destination: str
    mask: str
    gateway: str
    metric: int | None = None
    interface_index: int | None = None

    def describe(self) -> str:
        return f"{self.destination} mask {self.mask} via {self.gateway}"


class ReservationHolder(str, Enum):
    """Who put the port exclusion in place."""

    SELF = "self"
    FOREIGN = "foreign"


class PortReservation(BaseModel):
    """A fixed port excluded from ephemeral OS allocation."""

    model_config = ConfigDict(validate_assignment=True)

    port: int = Field(ge=1, le=65535)
    holder: ReservationHolder = ReservationHolder.SELF
    protocols: tuple[str, ...] = ("tcp", "udp")
    # (protocol, store) pairs this process added and must remove on release
    added: set[tuple[str, str]] = Field(default_factory=set)


class PortOwner(BaseModel):
    """Process listening on a port."""

    model_config = ConfigDict(frozen=True)

    pid: int
    name: str

    def describe(self) -> str:
        return f"{self.name} (PID {self.pid})"


class PortForward(BaseModel):
    """A v4-to-v4 port forwarding rule hosted by the OS."""

    model_config = ConfigDict(frozen=True)

    listen_address: str
    listen_port: int
    connect_address: str
    connect_port: int


class ProxySettings(BaseModel):
    """Per-user WinINet proxy: enable flag, server string and bypass list."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    server: str | None = None
    override: str | None = None


class ConflictAction(str, Enum):
    """Decision for a contested fixed port."""

    NO_ACTION = "no_action"
    RECLAIMED = "reclaimed"
    REPORT_TO_USER = "report_to_user"


class RouteState(str, Enum):
    """Full-tunnel orchestration states, forward then reverse."""

    IDLE = "idle"
    ADAPTER_STARTING = "adapter_starting"
    ADAPTER_UP = "adapter_up"
    ROUTES_APPLIED = "routes_applied"
    DNS_FORCED = "dns_forced"
    ACTIVE = "active"
    DNS_RESTORED = "dns_restored"
    ROUTES_REMOVED = "routes_removed"
    ADAPTER_STOPPED = "adapter_stopped"


class DnsPreset(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    primary: str
    secondary: str
    description: str = ""


class DnsBenchmarkResult(BaseModel):
    """Average resolution latency of one DNS server."""

    model_config = ConfigDict(frozen=True)

    server: str
    latency_ms: float = Field(ge=0.0)
    queries: int = Field(default=0, ge=0)
    failures: int = Field(default=0, ge=0)
    provider_id: str | None = None
    name: str | None = None
    secondary: str | None = None

    @property
    def responded(self) -> bool:
        """True if at least one query got an answer."""
        return self.failures < self.queries


class ConnectionStatus(str, Enum):
    """What the manager reports to the UI collaborator."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    PORT_PENDING = "port_pending"
    CONNECTED = "connected"
    CONNECTED_SOCKS_ONLY = "connected_socks_only"
    DISCONNECTING = "disconnecting"
    ERROR = "error"
