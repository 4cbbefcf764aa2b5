"""Configuration models supplied by the host application."""

import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .common.logging import get_logger
from .common.utils import is_ipv4, split_host_port

logger = get_logger(__name__)

PAQET_BINARY_NAME = "paqet_windows_amd64.exe"
TUN2SOCKS_BINARY_NAME = "tun2socks.exe"
WINTUN_DLL_NAME = "wintun.dll"


def default_data_dir() -> Path:
    """%LOCALAPPDATA%\\PaqetTunnel, falling back to the home directory."""
    base = os.environ.get("LOCALAPPDATA")
    root = Path(base) if base else Path.home() / "AppData" / "Local"
    return root / "PaqetTunnel"


class DnsSettings(BaseModel):
    """User's DNS choice: ``auto``, a preset id, or ``custom``."""

    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    provider: str = Field(default="auto", min_length=1, description="Provider id")
    custom_primary: str = Field(default="", description="Custom primary server")
    custom_secondary: str = Field(default="", description="Custom secondary server")

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        return v.lower()

    @field_validator("custom_primary", "custom_secondary")
    @classmethod
    def validate_server(cls, v: str) -> str:
        if v and not is_ipv4(v):
            raise ValueError(f"DNS server must be an IPv4 address: {v}")
        return v


class ConnectionSettings(BaseModel):
    """Everything a connect cycle needs from the configuration collaborator."""

    model_config = ConfigDict(
        str_strip_whitespace=True, validate_assignment=True, extra="forbid"
    )

    config_path: Path = Field(..., description="Tunnel client.yaml path")
    server_address: str = Field(..., min_length=1, description="Tunnel server host[:port]")
    key: str = Field(default="", description="Pre-shared transport key")
    interface: str = Field(default="", description="Physical interface name")
    dns: DnsSettings = Field(default_factory=DnsSettings)
    full_tunnel: bool = Field(default=False, description="Route all traffic via adapter")
    lan_sharing: bool = Field(default=False, description="Expose SOCKS on the LAN")
    system_proxy: bool = Field(default=False, description="Point the user proxy at SOCKS")

    @property
    def server_host(self) -> str:
        return split_host_port(self.server_address)[0]

    @property
    def server_port(self) -> int:
        return split_host_port(self.server_address)[1]

    def missing_optional_fields(self) -> list[str]:
        """Names of optional fields left empty."""
        return [name for name in ("key", "interface") if not getattr(self, name)]

    def log_missing_optional(self) -> None:
        """Warn about optional fields that will likely make the tunnel fail."""
        for name in self.missing_optional_fields():
            logger.warning("Optional setting is empty, tunnel may fail", field=name)


class InstallPaths(BaseModel):
    """Where the installer placed binaries, configs and logs."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    data_dir: Path = Field(default_factory=default_data_dir)

    @property
    def bin_dir(self) -> Path:
        return self.data_dir / "bin"

    @property
    def config_dir(self) -> Path:
        return self.data_dir / "config"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def paqet_binary(self) -> Path:
        return self.bin_dir / PAQET_BINARY_NAME

    @property
    def tun2socks_binary(self) -> Path:
        return self.bin_dir / TUN2SOCKS_BINARY_NAME

    @property
    def wintun_dll(self) -> Path:
        return self.bin_dir / WINTUN_DLL_NAME

    @property
    def config_path(self) -> Path:
        return self.config_dir / "client.yaml"

    def missing_binaries(self, full_tunnel: bool = False) -> list[Path]:
        """Binaries that must exist before a connect and are absent."""
        required = [self.paqet_binary]
        if full_tunnel:
            required += [self.tun2socks_binary, self.wintun_dll]
        return [path for path in required if not path.is_file()]


class TimeoutConfig(BaseModel):
    """Polling intervals, deadlines and retry budgets (seconds)."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    readiness_timeout: float = Field(default=15.0, ge=0.0, le=120.0)
    readiness_interval: float = Field(default=0.5, gt=0.0, le=5.0)
    bind_attempts: int = Field(default=3, ge=1, le=10)
    bind_retry_delay: float = Field(default=2.0, ge=0.0, le=30.0)
    slow_threshold: float = Field(default=8.0, ge=0.0, le=120.0)

    stop_timeout: float = Field(default=3.0, ge=0.0, le=30.0)
    stop_verify_timeout: float = Field(default=2.0, ge=0.0, le=30.0)
    stop_verify_interval: float = Field(default=0.2, gt=0.0, le=5.0)

    bridge_startup_delay: float = Field(default=1.0, ge=0.0, le=10.0)
    adapter_timeout: float = Field(default=10.0, ge=0.0, le=60.0)
    adapter_interval: float = Field(default=0.5, gt=0.0, le=5.0)
    adapter_teardown_timeout: float = Field(default=3.0, ge=0.0, le=30.0)

    port_release_timeout: float = Field(default=3.0, ge=0.0, le=30.0)
    port_release_interval: float = Field(default=0.25, gt=0.0, le=5.0)

    route_command_timeout: float = Field(default=5.0, gt=0.0, le=60.0)
    netsh_command_timeout: float = Field(default=10.0, gt=0.0, le=60.0)
    powershell_command_timeout: float = Field(default=15.0, gt=0.0, le=60.0)
    short_command_timeout: float = Field(default=5.0, gt=0.0, le=60.0)
