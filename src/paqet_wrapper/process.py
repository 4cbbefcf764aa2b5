"""Process supervision for the paqet tunnel binary."""

import subprocess
import threading
from collections.abc import Callable
from pathlib import Path

import psutil

from .common.commands import CREATE_NO_WINDOW, run_command
from .common.exceptions import (
    BinaryMissingError,
    BindTimeoutError,
    CommandError,
    ConfigurationError,
    OperationCancelledError,
    PortConflictError,
    ProcessCrashedError,
    StopNonConvergentError,
)
from .common.logging import get_logger
from .common.polling import poll_until
from .common.process import OutputCapture, find_processes, is_port_listening, terminate_process_tree
from .models import SOCKS_PORT, ConflictAction, StopOutcome, TunnelProcessHandle, TunnelState
from .ports import PortArbiter
from .settings import ConnectionSettings, InstallPaths, TimeoutConfig

logger = get_logger(__name__)

ProgressCallback = Callable[[str], None]

# Lines paqet prints when it cannot bind its SOCKS listener
BIND_FAILURE_SIGNATURES = (
    "failed to listen",
    "access a socket",
    "address already in use",
)

PORT_PENDING_MESSAGE = "port binding pending"


def is_bind_failure(output: str) -> bool:
    """Check captured tunnel output for a bind-conflict signature.

    This is the only place that interprets paqet's output. A bind conflict
    is usually transient (an OS sharing service grabbing the port for a
    moment) and is retried, any other early exit is not.
    """
    lowered = output.lower()
    return any(signature in lowered for signature in BIND_FAILURE_SIGNATURES)


class ProcessSupervisor:
    """Starts, watches and stops the paqet tunnel subprocess.

    Holds at most one TunnelProcessHandle. The SOCKS port is reserved with
    the PortArbiter and cleared of conflicts before every launch; a port held
    by a foreign process aborts the start without launching anything.
    """

    def __init__(
        self,
        paths: InstallPaths,
        arbiter: PortArbiter,
        timeouts: TimeoutConfig | None = None,
        socks_port: int = SOCKS_PORT,
        port_check: Callable[[int], bool] = is_port_listening,
    ):
        self.paths = paths
        self.arbiter = arbiter
        self.timeouts = timeouts or TimeoutConfig()
        self.socks_port = socks_port
        self._port_check = port_check
        self._handle: TunnelProcessHandle | None = None
        self._lock = threading.RLock()

    @property
    def handle(self) -> TunnelProcessHandle | None:
        return self._handle

    @property
    def image_name(self) -> str:
        return self.paths.paqet_binary.name

    def command(self, config_path: Path) -> list[str]:
        return [str(self.paths.paqet_binary), "run", "--config", str(config_path)]

    def start(
        self,
        settings: ConnectionSettings,
        cancel_event: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> TunnelProcessHandle:
        """Launch paqet and wait for its SOCKS port.

        Args:
            settings: Connection settings; only config_path is used here
            cancel_event: Set by a concurrent stop request
            progress: Receives human readable progress messages

        Returns:
            Handle in RUNNING state, or STARTING with message
            "port binding pending" if the process is alive but the port did
            not come up before the readiness deadline

        Raises:
            BinaryMissingError: If the paqet binary is not installed
            ConfigurationError: If the config file does not exist
            PortConflictError: If a foreign process holds the SOCKS port
            BindTimeoutError: If every attempt hit a bind conflict
            ProcessCrashedError: If paqet exited for any other reason
            OperationCancelledError: If cancel_event was set
        """
        notify = progress or (lambda _message: None)

        if not self.paths.paqet_binary.is_file():
            raise BinaryMissingError(f"{self.image_name} not found. Run setup first.")
        if not settings.config_path.is_file():
            raise ConfigurationError(f"Config not found: {settings.config_path}")
        settings.log_missing_optional()

        with self._lock:
            current = self._handle
            if current is not None and current.state != TunnelState.FAILED and self._alive(current):
                logger.debug("Tunnel already running", pid=current.pid)
                self.is_ready(current)
                return current

            adopted = self._adopt_running()
            if adopted is not None:
                return adopted

            self._ensure_port_available()
            return self._launch_with_retry(settings.config_path, cancel_event, notify)

    def _adopt_running(self) -> TunnelProcessHandle | None:
        running = find_processes(self.image_name)
        if not running:
            return None

        if self._port_check(self.socks_port):
            handle = TunnelProcessHandle(
                pid=running[0].pid,
                port=self.socks_port,
                state=TunnelState.RUNNING,
                message="adopted running tunnel",
            )
            self._handle = handle
            logger.info("Adopted running tunnel process", pid=handle.pid)
            return handle

        logger.warning(
            "Stale tunnel process is not serving the SOCKS port, stopping it",
            pids=[proc.pid for proc in running],
        )
        for proc in running:
            terminate_process_tree(proc.pid, timeout=self.timeouts.stop_timeout)
        return None

    def _ensure_port_available(self) -> None:
        if not self.arbiter.is_reserved(self.socks_port):
            self.arbiter.reserve([self.socks_port])

        if self.arbiter.resolve_conflict(self.socks_port) == ConflictAction.REPORT_TO_USER:
            owner = self.arbiter.owner_of(self.socks_port)
            raise PortConflictError(self.socks_port, owner.describe() if owner else None)

    def _spawn(self, config_path: Path) -> tuple[subprocess.Popen[str], OutputCapture]:
        args = self.command(config_path)
        logger.info("Starting tunnel process", args=args)
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
            logger.error("Failed to start tunnel process", error=str(e))
            raise ProcessCrashedError(None, f"Failed to start {self.image_name}: {e}") from e
        return process, OutputCapture(process, source="paqet")

    def _launch_with_retry(
        self,
        config_path: Path,
        cancel_event: threading.Event | None,
        notify: ProgressCallback,
    ) -> TunnelProcessHandle:
        attempts = self.timeouts.bind_attempts
        last_tail = ""

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                notify(f"Port conflict, retrying ({attempt}/{attempts})...")
                waiter = cancel_event or threading.Event()
                if waiter.wait(self.timeouts.bind_retry_delay) and cancel_event is not None:
                    raise OperationCancelledError("Tunnel start cancelled")

            notify("Starting tunnel...")
            process, output = self._spawn(config_path)
            handle = TunnelProcessHandle(pid=process.pid, port=self.socks_port, attempt=attempt)
            handle.attach(process, output)
            self._handle = handle

            try:
                ready = self._wait_ready(handle, process, output, cancel_event, notify)
            except OperationCancelledError:
                logger.info("Tunnel start cancelled, killing process", pid=handle.pid)
                self._kill(handle)
                raise

            if ready:
                handle.state = TunnelState.RUNNING
                handle.message = "SOCKS5 port ready"
                logger.info("Tunnel ready", pid=handle.pid, port=handle.port, attempt=attempt)
                return handle

            exit_code = process.poll()
            if exit_code is not None:
                output.join()

            if is_bind_failure(output.text()):
                last_tail = output.tail()
                logger.warning(
                    "Tunnel failed to bind SOCKS5 port",
                    attempt=attempt,
                    attempts=attempts,
                    output=last_tail,
                )
                self._kill(handle)
                continue

            if exit_code is not None:
                self._kill(handle)
                logger.error("Tunnel process exited", exit_code=exit_code, output=output.tail())
                raise ProcessCrashedError(exit_code, output.tail())

            handle.message = PORT_PENDING_MESSAGE
            logger.warning(
                "Tunnel running but SOCKS5 port not ready yet",
                pid=handle.pid,
                timeout=self.timeouts.readiness_timeout,
            )
            notify("Tunnel running, port binding pending...")
            return handle

        raise BindTimeoutError(attempts, last_tail)

    def _wait_ready(
        self,
        handle: TunnelProcessHandle,
        process: subprocess.Popen[str],
        output: OutputCapture,
        cancel_event: threading.Event | None,
        notify: ProgressCallback,
    ) -> bool:
        def settled() -> bool:
            if process.poll() is not None or is_bind_failure(output.text()):
                return True
            return self._port_check(handle.port)

        def on_tick(_checks: int, elapsed: float) -> None:
            if elapsed >= self.timeouts.slow_threshold:
                notify(f"Tunnel start is taking unusually long ({elapsed:.0f}s)...")
            else:
                notify(f"Waiting for SOCKS5 port ({elapsed:.0f}s)...")

        poll_until(
            settled,
            timeout=self.timeouts.readiness_timeout,
            interval=self.timeouts.readiness_interval,
            cancel_event=cancel_event,
            on_tick=on_tick,
        )
        return (
            process.poll() is None
            and not is_bind_failure(output.text())
            and self._port_check(handle.port)
        )

    def _kill(self, handle: TunnelProcessHandle) -> None:
        terminate_process_tree(handle.pid, timeout=self.timeouts.stop_timeout)
        handle.state = TunnelState.STOPPED
        if self._handle is handle:
            self._handle = None

    def _alive(self, handle: TunnelProcessHandle) -> bool:
        if handle.process is not None:
            return handle.process.poll() is None
        return psutil.pid_exists(handle.pid)

    def is_ready(self, handle: TunnelProcessHandle | None = None) -> bool:
        """True iff the process is alive and its port accepts TCP right now.

        Promotes a STARTING (or FAILED) handle to RUNNING when the port comes
        up and demotes a RUNNING handle to FAILED when it goes away.
        """
        handle = handle or self._handle
        if handle is None or handle.state == TunnelState.STOPPED:
            return False

        alive = self._alive(handle)
        ready = alive and self._port_check(handle.port)

        if ready and handle.state != TunnelState.RUNNING:
            handle.state = TunnelState.RUNNING
            handle.message = "SOCKS5 port ready"
            logger.info("Tunnel became ready", pid=handle.pid, port=handle.port)
        elif not ready and handle.state == TunnelState.RUNNING:
            handle.state = TunnelState.FAILED
            handle.message = "process exited" if not alive else "SOCKS5 port stopped responding"
            logger.warning("Tunnel no longer ready", pid=handle.pid, reason=handle.message)
        return ready

    def stop(self, handle: TunnelProcessHandle | None = None) -> StopOutcome:
        """Terminate the tunnel, tracked or not.

        Liveness is checked by process enumeration, so a tunnel left behind
        by an earlier session is stopped too.

        Returns:
            STOPPED, or ALREADY_STOPPED if nothing was running

        Raises:
            StopNonConvergentError: If a tunnel process survives every attempt
        """
        with self._lock:
            handle = handle or self._handle
            pids: list[int] = []
            if handle is not None and self._alive(handle):
                pids.append(handle.pid)
            pids += [proc.pid for proc in find_processes(self.image_name) if proc.pid not in pids]

            if not pids:
                self._forget(handle)
                logger.debug("Tunnel already stopped")
                return StopOutcome.ALREADY_STOPPED

            logger.info("Stopping tunnel process", pids=pids)
            for pid in pids:
                terminate_process_tree(pid, timeout=self.timeouts.stop_timeout)

            if find_processes(self.image_name):
                self._force_kill()

            stopped = poll_until(
                lambda: not find_processes(self.image_name),
                timeout=self.timeouts.stop_verify_timeout,
                interval=self.timeouts.stop_verify_interval,
            )
            if not stopped:
                survivors = [proc.pid for proc in find_processes(self.image_name)]
                logger.error("Tunnel process did not stop", pids=survivors)
                raise StopNonConvergentError(survivors)

            self._forget(handle)
            logger.info("Tunnel process stopped")
            return StopOutcome.STOPPED

    def _force_kill(self) -> None:
        logger.warning("Tunnel process survived tree kill, using taskkill", image=self.image_name)
        try:
            run_command(
                ["taskkill", "/F", "/T", "/IM", self.image_name],
                timeout=self.timeouts.short_command_timeout,
            )
        except CommandError as e:
            logger.warning("taskkill failed", error=str(e))

    def _forget(self, handle: TunnelProcessHandle | None) -> None:
        if handle is not None:
            handle.state = TunnelState.STOPPED
            handle.message = "stopped"
        if self._handle is handle:
            self._handle = None
