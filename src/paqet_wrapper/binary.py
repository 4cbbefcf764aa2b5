"""Wrappers for the paqet binary's one-shot subcommands."""

from pathlib import Path

from .common.commands import CommandResult, run_command
from .common.exceptions import BinaryMissingError, CommandError
from .common.logging import get_logger
from .settings import InstallPaths

logger = get_logger(__name__)


class PaqetBinary:
    """Runs ``version``, ``iface``, ``secret`` and ``ping`` and parses their output."""

    def __init__(self, paths: InstallPaths, timeout: float = 10.0, ping_timeout: float = 15.0):
        self.paths = paths
        self.timeout = timeout
        self.ping_timeout = ping_timeout

    @property
    def path(self) -> Path:
        return self.paths.paqet_binary

    def exists(self) -> bool:
        return self.path.is_file()

    def _run(self, *args: str, timeout: float | None = None) -> CommandResult:
        if not self.exists():
            raise BinaryMissingError(f"{self.path.name} not found. Run setup first.")

        result = run_command([str(self.path), *args], timeout=timeout or self.timeout)
        if not result.ok:
            detail = result.output.strip() or f"exit code {result.returncode}"
            logger.warning("paqet command failed", command=args[0], output=detail)
            raise CommandError(f"paqet {args[0]} failed: {detail}")
        return result

    def version_info(self) -> str:
        """Full output of ``paqet version``."""
        return self._run("version").stdout.strip()

    def version(self) -> str:
        """Version number from the ``Version:`` line, or the whole output."""
        info = self.version_info()
        for line in info.splitlines():
            label, sep, value = line.strip().partition(":")
            if sep and label.strip().lower() == "version":
                return value.strip()
        return info

    def list_interfaces(self) -> list[str]:
        """Lines printed by ``paqet iface``."""
        output = self._run("iface").stdout
        return [line.strip() for line in output.splitlines() if line.strip()]

    def generate_secret(self) -> str:
        secret = self._run("secret").stdout.strip()
        if not secret:
            raise CommandError("paqet secret returned no key")
        return secret

    def ping(self, config_path: str | Path | None = None, payload: str | None = None) -> str:
        """Send one ping packet to the configured server.

        Returns:
            Combined stdout and stderr of the command
        """
        args = ["ping", "--config", str(config_path or self.paths.config_path)]
        if payload:
            args += ["--payload", payload]
        result = self._run(*args, timeout=self.ping_timeout)
        output = "\n".join(part.strip() for part in (result.stdout, result.stderr) if part.strip())
        return output or "Ping sent."
