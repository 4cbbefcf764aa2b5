"""Adapter-bridge subprocess: tun2socks feeding the virtual adapter into SOCKS."""

import subprocess
import threading

from ..common.commands import CREATE_NO_WINDOW
from ..common.exceptions import BinaryMissingError, ProcessCrashedError, StopNonConvergentError
from ..common.logging import get_logger
from ..common.process import LOOPBACK, OutputCapture, find_processes, terminate_process_tree
from ..models import SOCKS_PORT, AdapterState
from ..settings import InstallPaths, TimeoutConfig

logger = get_logger(__name__)


class AdapterBridge:
    """Starts and stops the tun2socks process that owns the virtual adapter."""

    def __init__(
        self,
        paths: InstallPaths,
        adapter: AdapterState | None = None,
        socks_port: int = SOCKS_PORT,
        timeouts: TimeoutConfig | None = None,
    ):
        self.paths = paths
        self.adapter = adapter or AdapterState()
        self.socks_port = socks_port
        self.timeouts = timeouts or TimeoutConfig()
        self._process: subprocess.Popen[str] | None = None
        self._output: OutputCapture | None = None
        self._lock = threading.Lock()

    @property
    def image_name(self) -> str:
        return self.paths.tun2socks_binary.name

    @property
    def pid(self) -> int | None:
        with self._lock:
            if self._process is not None and self._process.poll() is None:
                return self._process.pid
        return None

    def binaries_present(self) -> bool:
        return self.paths.tun2socks_binary.is_file() and self.paths.wintun_dll.is_file()

    def command(self) -> list[str]:
        return [
            str(self.paths.tun2socks_binary),
            "-device",
            f"tun://{self.adapter.name}",
            "-proxy",
            f"socks5://{LOOPBACK}:{self.socks_port}",
        ]

    def is_running(self) -> bool:
        """Tracked process alive, or any bridge process found by enumeration."""
        if self.pid is not None:
            return True
        return bool(find_processes(self.image_name))

    def start(self) -> int:
        """Launch the bridge and make sure it survives its first second.

        Returns:
            PID of the bridge process

        Raises:
            BinaryMissingError: If tun2socks or wintun.dll is absent
            ProcessCrashedError: If the bridge exits right after launch
        """
        if not self.binaries_present():
            missing = [
                path.name
                for path in (self.paths.tun2socks_binary, self.paths.wintun_dll)
                if not path.is_file()
            ]
            raise BinaryMissingError(f"{', '.join(missing)} not found. Run setup first.")

        args = self.command()
        logger.info("Starting adapter bridge", args=args)
        try:
            process = subprocess.Popen(
                args,
                cwd=str(self.paths.bin_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                creationflags=CREATE_NO_WINDOW,
            )
        except OSError as e:
            raise ProcessCrashedError(None, f"tun2socks start failed: {e}") from e

        output = OutputCapture(process, source="tun2socks")
        try:
            exit_code = process.wait(timeout=self.timeouts.bridge_startup_delay)
        except subprocess.TimeoutExpired:
            exit_code = None

        if exit_code is not None:
            output.join()
            logger.error("Adapter bridge exited immediately", exit_code=exit_code)
            raise ProcessCrashedError(
                exit_code,
                output.tail() or "tun2socks exited immediately. Needs admin privileges.",
            )

        with self._lock:
            self._process = process
            self._output = output
        logger.info("Adapter bridge started", pid=process.pid)
        return process.pid

    def stop(self) -> None:
        """Kill the tracked bridge and any stray bridge processes.

        Raises:
            StopNonConvergentError: If a bridge process is still alive afterwards
        """
        with self._lock:
            process, self._process = self._process, None
            self._output = None

        if process is not None and process.poll() is None:
            logger.info("Killing adapter bridge", pid=process.pid)
            terminate_process_tree(process.pid, timeout=self.timeouts.stop_timeout)

        survivors = []
        for proc in find_processes(self.image_name):
            if not terminate_process_tree(proc.pid, timeout=self.timeouts.stop_timeout):
                survivors.append(proc.pid)

        if survivors:
            raise StopNonConvergentError(survivors)
        logger.info("Adapter bridge stopped")
