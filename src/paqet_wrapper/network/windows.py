"""NetworkMutator backed by Windows command-line tools and psutil.

Every call shells out synchronously to ``route``, ``netsh``, ``ipconfig``,
``reg`` or ``powershell`` with its own timeout, and translates failures into
RouteCommandError so the orchestrator can unwind.
"""

import ctypes
import sys

import psutil

from ..common.commands import CommandResult, run_command
from ..common.exceptions import CommandError, RouteCommandError
from ..common.logging import get_logger
from ..common.utils import is_ipv4
from ..models import PortForward, PortOwner, ProxySettings, Route
from ..settings import TimeoutConfig

logger = get_logger(__name__)

FAILURE_MARKERS = (
    "failed",
    "the parameter is incorrect",
    "requires elevation",
    "access is denied",
    "run as administrator",
    "bad argument",
    "not recognized",
)
ALREADY_EXISTS_MARKERS = ("already exists",)
NOT_FOUND_MARKERS = ("element not found", "not found", "cannot find")
REG_NOT_FOUND_MARKERS = ("unable to find",)

INTERNET_SETTINGS_KEY = r"HKCU\Software\Microsoft\Windows\CurrentVersion\Internet Settings"
INTERNET_OPTION_SETTINGS_CHANGED = 39
INTERNET_OPTION_REFRESH = 37


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in markers)


class WindowsNetworkMutator:
    """Applies host network changes through the Windows CLI toolset."""

    def __init__(self, timeouts: TimeoutConfig | None = None):
        self.timeouts = timeouts or TimeoutConfig()

    def _run(self, args: list[str], timeout: float, step: str) -> CommandResult:
        try:
            return run_command(args, timeout=timeout)
        except CommandError as e:
            raise RouteCommandError(step, str(e)) from e

    def _run_checked(
        self,
        args: list[str],
        timeout: float,
        step: str,
        tolerate: tuple[str, ...] = (),
    ) -> CommandResult:
        result = self._run(args, timeout, step)
        text = f"{result.stdout}\n{result.stderr}"
        if tolerate and _contains_any(text, tolerate):
            return result
        if not result.ok or _contains_any(text, FAILURE_MARKERS):
            raise RouteCommandError(step, result.output.strip())
        return result

    def _netsh(self, args: list[str], step: str, tolerate: tuple[str, ...] = ()) -> CommandResult:
        return self._run_checked(
            ["netsh", *args], self.timeouts.netsh_command_timeout, step, tolerate
        )

    # Adapters

    def get_default_gateway(self) -> str | None:
        result = self._run(
            ["route", "print", "0.0.0.0"],
            self.timeouts.route_command_timeout,
            "read default gateway",
        )
        return parse_default_gateway(result.stdout)

    def is_adapter_up(self, name: str) -> bool:
        wanted = name.lower()
        for adapter, stats in psutil.net_if_stats().items():
            if adapter.lower() == wanted:
                return bool(stats.isup)
        return False

    def get_interface_index(self, name: str) -> int | None:
        result = self._run(
            ["netsh", "interface", "ipv4", "show", "interfaces"],
            self.timeouts.netsh_command_timeout,
            "read interface index",
        )
        return parse_interface_index(result.stdout, name)

    def list_active_adapters(self) -> list[str]:
        return sorted(
            adapter
            for adapter, stats in psutil.net_if_stats().items()
            if stats.isup and "loopback" not in adapter.lower()
        )

    def set_adapter_address(self, name: str, address: str, netmask: str) -> None:
        self._netsh(
            ["interface", "ip", "set", "address", name, "static", address, netmask],
            f"assign {address} to {name}",
        )

    def disable_ipv6(self, name: str) -> None:
        command = f"Disable-NetAdapterBinding -Name '{name}' -ComponentId ms_tcpip6"
        self._run_checked(
            ["powershell", "-NoProfile", "-Command", command],
            self.timeouts.powershell_command_timeout,
            f"disable IPv6 on {name}",
        )

    # Routes

    def add_route(self, route: Route) -> bool:
        args = ["route", "add", route.destination, "mask", route.mask, route.gateway]
        if route.metric is not None:
            args += ["metric", str(route.metric)]
        if route.interface_index is not None:
            args += ["if", str(route.interface_index)]

        result = self._run_checked(
            args,
            self.timeouts.route_command_timeout,
            f"add route {route.describe()}",
            tolerate=ALREADY_EXISTS_MARKERS,
        )
        if _contains_any(result.output, ALREADY_EXISTS_MARKERS):
            logger.info("Route already present", route=route.describe())
            return False
        return True

    def delete_route(self, route: Route, persistent: bool = False) -> None:
        args = ["route"]
        if persistent:
            args.append("-p")
        args += ["delete", route.destination, "mask", route.mask, route.gateway]
        self._run_checked(
            args,
            self.timeouts.route_command_timeout,
            f"delete route {route.describe()}",
            tolerate=NOT_FOUND_MARKERS,
        )

    # DNS

    def get_adapter_dns(self, name: str) -> list[str] | None:
        result = self._run(
            ["netsh", "interface", "ip", "show", "dns", name],
            self.timeouts.netsh_command_timeout,
            f"read DNS of {name}",
        )
        return parse_static_dns(result.stdout)

    def set_adapter_dns(self, name: str, servers: list[str]) -> None:
        if not servers:
            raise RouteCommandError(f"set DNS on {name}", "no servers given")
        self._netsh(
            ["interface", "ip", "set", "dns", name, "static", servers[0]],
            f"set DNS on {name}",
        )
        for index, server in enumerate(servers[1:], start=2):
            self._netsh(
                ["interface", "ip", "add", "dns", name, server, f"index={index}"],
                f"add DNS {server} on {name}",
            )

    def reset_adapter_dns(self, name: str) -> None:
        self._netsh(["interface", "ip", "set", "dns", name, "dhcp"], f"reset DNS on {name}")

    def flush_dns_cache(self) -> None:
        self._run_checked(
            ["ipconfig", "/flushdns"],
            self.timeouts.short_command_timeout,
            "flush DNS cache",
        )

    # Ports

    def list_excluded_ports(self, protocol: str, store: str) -> set[int]:
        result = self._run(
            ["netsh", "int", "ipv4", "show", "excludedportrange", f"protocol={protocol}", f"store={store}"],
            self.timeouts.netsh_command_timeout,
            "read excluded ports",
        )
        return parse_excluded_ports(result.stdout)

    def add_excluded_port(self, port: int, protocol: str, store: str) -> None:
        self._netsh(
            [
                "int", "ipv4", "add", "excludedportrange",
                f"protocol={protocol}", f"startport={port}", "numberofports=1", f"store={store}",
            ],
            f"exclude {protocol} port {port} ({store})",
        )

    def delete_excluded_port(self, port: int, protocol: str, store: str) -> None:
        self._netsh(
            [
                "int", "ipv4", "delete", "excludedportrange",
                f"protocol={protocol}", f"startport={port}", "numberofports=1", f"store={store}",
            ],
            f"remove {protocol} port {port} exclusion ({store})",
            tolerate=NOT_FOUND_MARKERS,
        )

    def find_port_owner(self, port: int) -> PortOwner | None:
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            logger.warning("Cannot enumerate sockets, access denied", port=port)
            return None

        for conn in connections:
            if conn.status != psutil.CONN_LISTEN or not conn.laddr or conn.laddr.port != port:
                continue
            pid = conn.pid or 0
            try:
                name = psutil.Process(pid).name() if pid else "System"
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                name = "<unknown>"
            return PortOwner(pid=pid, name=name)
        return None

    def list_port_forwards(self) -> list[PortForward]:
        result = self._run(
            ["netsh", "interface", "portproxy", "show", "v4tov4"],
            self.timeouts.netsh_command_timeout,
            "read port forwards",
        )
        return parse_port_forwards(result.stdout)

    def add_port_forward(self, forward: PortForward) -> None:
        self._netsh(
            [
                "interface", "portproxy", "add", "v4tov4",
                f"listenaddress={forward.listen_address}",
                f"listenport={forward.listen_port}",
                f"connectaddress={forward.connect_address}",
                f"connectport={forward.connect_port}",
            ],
            f"add port forward {forward.listen_address}:{forward.listen_port}",
        )

    def delete_port_forward(self, listen_address: str, listen_port: int) -> None:
        self._netsh(
            [
                "interface", "portproxy", "delete", "v4tov4",
                f"listenaddress={listen_address}", f"listenport={listen_port}",
            ],
            f"delete port forward {listen_address}:{listen_port}",
            tolerate=NOT_FOUND_MARKERS,
        )

    def add_firewall_rule(self, name: str, port: int) -> None:
        self._netsh(
            [
                "advfirewall", "firewall", "add", "rule", f"name={name}",
                "dir=in", "action=allow", "protocol=TCP", f"localport={port}", "profile=any",
            ],
            f"add firewall rule {name}",
        )

    def delete_firewall_rule(self, name: str) -> None:
        self._netsh(
            ["advfirewall", "firewall", "delete", "rule", f"name={name}"],
            f"delete firewall rule {name}",
            tolerate=("no rules match",),
        )

    # System proxy

    def _reg_query(self, name: str) -> str | None:
        result = self._run(
            ["reg", "query", INTERNET_SETTINGS_KEY, "/v", name],
            self.timeouts.short_command_timeout,
            f"read {name}",
        )
        if not result.ok:
            return None
        return parse_reg_value(result.stdout, name)

    def _reg_set(self, name: str, kind: str, value: str) -> None:
        self._run_checked(
            ["reg", "add", INTERNET_SETTINGS_KEY, "/v", name, "/t", kind, "/d", value, "/f"],
            self.timeouts.short_command_timeout,
            f"write {name}",
        )

    def _reg_delete(self, name: str) -> None:
        self._run_checked(
            ["reg", "delete", INTERNET_SETTINGS_KEY, "/v", name, "/f"],
            self.timeouts.short_command_timeout,
            f"delete {name}",
            tolerate=REG_NOT_FOUND_MARKERS,
        )

    def get_system_proxy(self) -> ProxySettings:
        enabled = self._reg_query("ProxyEnable")
        return ProxySettings(
            enabled=enabled in ("0x1", "1"),
            server=self._reg_query("ProxyServer"),
            override=self._reg_query("ProxyOverride"),
        )

    def set_system_proxy(self, settings: ProxySettings) -> None:
        for name, value in (("ProxyServer", settings.server), ("ProxyOverride", settings.override)):
            if value is None:
                self._reg_delete(name)
            else:
                self._reg_set(name, "REG_SZ", value)
        self._reg_set("ProxyEnable", "REG_DWORD", "1" if settings.enabled else "0")
        _notify_proxy_change()

    def get_winhttp_proxy(self) -> str:
        result = self._run(
            ["netsh", "winhttp", "show", "proxy"],
            self.timeouts.netsh_command_timeout,
            "read WinHTTP proxy",
        )
        return result.stdout

    def reset_winhttp_proxy(self) -> None:
        self._netsh(["winhttp", "reset", "proxy"], "reset WinHTTP proxy")


def _notify_proxy_change() -> None:
    """Tell WinINet clients to reload their proxy settings."""
    if sys.platform != "win32":
        return
    try:
        internet_set_option = ctypes.windll.Wininet.InternetSetOptionW
        internet_set_option(0, INTERNET_OPTION_SETTINGS_CHANGED, 0, 0)
        internet_set_option(0, INTERNET_OPTION_REFRESH, 0, 0)
    except (AttributeError, OSError) as e:
        logger.warning("Could not notify proxy change", error=str(e))


def parse_reg_value(output: str, name: str) -> str | None:
    """Data column of a ``reg query /v name`` row, None when absent."""
    wanted = name.lower()
    for line in output.splitlines():
        parts = line.split(None, 2)
        if len(parts) >= 2 and parts[0].lower() == wanted and parts[1].startswith("REG_"):
            return parts[2].strip() if len(parts) == 3 else ""
    return None


def parse_default_gateway(output: str) -> str | None:
    """Pick the lowest-metric 0.0.0.0/0 gateway from ``route print`` output."""
    best: tuple[int, str] | None = None
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 5 or parts[0] != "0.0.0.0" or parts[1] != "0.0.0.0":
            continue
        gateway = parts[2]
        if not is_ipv4(gateway) or not parts[4].isdigit():
            continue
        candidate = (int(parts[4]), gateway)
        if best is None or candidate < best:
            best = candidate
    return best[1] if best else None


def parse_interface_index(output: str, name: str) -> int | None:
    """Find the Idx column for name in ``netsh interface ipv4 show interfaces``."""
    wanted = name.lower()
    for line in output.splitlines():
        parts = line.split(None, 4)
        if len(parts) == 5 and parts[0].isdigit() and parts[4].strip().lower() == wanted:
            return int(parts[0])
    return None


def parse_static_dns(output: str) -> list[str] | None:
    """Statically configured servers from ``netsh interface ip show dns``.

    Returns None when the adapter takes its DNS servers from DHCP.
    """
    servers: list[str] = []
    in_static_block = False
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if ":" in stripped:
            label, _, value = stripped.rpartition(":")
            lowered = label.lower()
            in_static_block = "statically configured" in lowered
            if "dhcp" in lowered:
                return None
            value = value.strip()
            if in_static_block and is_ipv4(value):
                servers.append(value)
        elif in_static_block and is_ipv4(stripped):
            servers.append(stripped)
    return servers or None


def parse_excluded_ports(output: str) -> set[int]:
    """Expand the start/end rows of ``show excludedportrange`` into ports."""
    ports: set[int] = set()
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0].isdigit() and parts[1].isdigit():
            ports.update(range(int(parts[0]), int(parts[1]) + 1))
    return ports


def parse_port_forwards(output: str) -> list[PortForward]:
    """Rows of ``netsh interface portproxy show v4tov4``."""
    forwards = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) != 4 or not parts[1].isdigit() or not parts[3].isdigit():
            continue
        forwards.append(
            PortForward(
                listen_address=parts[0],
                listen_port=int(parts[1]),
                connect_address=parts[2],
                connect_port=int(parts[3]),
            )
        )
    return forwards
