"""Low-level process helpers: output capture, enumeration, tree termination."""

import socket
import subprocess
import threading
from collections import deque
from typing import IO

import psutil

from .logging import get_logger

logger = get_logger(__name__)

LOOPBACK = "127.0.0.1"


class OutputCapture:
    """Continuously drains a child's stdout and stderr on daemon threads.

    An unread pipe eventually fills and blocks the child, so both streams are
    read for the whole lifetime of the process. The most recent lines are
    kept for error reporting and bind-failure detection.
    """

    def __init__(self, process: subprocess.Popen[str], source: str, max_lines: int = 200):
        self.source = source
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []

        for stream_name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            if stream is None:
                continue
            thread = threading.Thread(
                target=self._drain,
                args=(stream, stream_name),
                name=f"{source}-{stream_name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def _drain(self, stream: IO[str], stream_name: str) -> None:
        try:
            for raw in iter(stream.readline, ""):
                line = raw.rstrip("\r\n")
                if not line:
                    continue
                with self._lock:
                    self._lines.append(line)
                logger.debug(line, source=self.source, stream=stream_name)
        except (OSError, ValueError):
            # Pipe closed underneath us when the process was killed
            pass

    def text(self) -> str:
        """All captured lines still in the buffer."""
        with self._lock:
            return "\n".join(self._lines)

    def tail(self, lines: int = 20) -> str:
        """The last few captured lines."""
        with self._lock:
            return "\n".join(list(self._lines)[-lines:])

    def join(self, timeout: float = 1.0) -> None:
        """Wait for the reader threads to reach end of stream."""
        for thread in self._threads:
            thread.join(timeout)


def is_port_listening(port: int, host: str = LOOPBACK, timeout: float = 0.5) -> bool:
    """Check whether something accepts TCP connections on host:port right now."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def find_processes(image_name: str) -> list[psutil.Process]:
    """Return running processes whose executable name matches image_name."""
    wanted = image_name.lower()
    matches = []
    for proc in psutil.process_iter(["name"]):
        try:
            name = proc.info.get("name") or ""
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if name.lower() == wanted:
            matches.append(proc)
    return matches


def terminate_process_tree(pid: int, timeout: float = 3.0) -> bool:
    """Kill a process and all of its descendants.

    Args:
        pid: Root process id
        timeout: Seconds to wait for the processes to exit

    Returns:
        True if every process in the tree is gone
    """
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return True
    except psutil.AccessDenied:
        logger.warning("Access denied opening process", pid=pid)
        return False

    try:
        procs = root.children(recursive=True)
    except psutil.NoSuchProcess:
        procs = []
    except psutil.AccessDenied:
        logger.warning("Access denied listing child processes, killing root only", pid=pid)
        procs = []
    procs.append(root)

    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("Access denied killing process", pid=proc.pid)

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    if alive:
        logger.warning("Processes still alive after kill", pids=[p.pid for p in alive])
    return not alive
