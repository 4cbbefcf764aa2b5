"""Custom exceptions for paqet wrapper."""


class PaqetWrapperError(Exception):
    """Base exception for all paqet wrapper errors."""

    pass


class ConfigurationError(PaqetWrapperError):
    """Raised when connection settings are invalid or incomplete."""

    pass


class BinaryMissingError(PaqetWrapperError):
    """Raised when the tunnel or adapter-bridge binary is not installed."""

    pass


class CommandError(PaqetWrapperError):
    """Raised when an OS command cannot be executed."""

    pass


class CommandTimeoutError(CommandError):
    """Raised when an OS command does not finish within its timeout."""

    pass


class PortConflictError(PaqetWrapperError):
    """Raised when a fixed port is held by a process we must not touch."""

    def __init__(self, port: int, owner: str | None = None, message: str | None = None):
        self.port = port
        self.owner = owner
        if message is None:
            holder = owner or "another process"
            message = f"Port {port} is in use by {holder}"
        super().__init__(message)


class BindTimeoutError(PaqetWrapperError):
    """Raised when the tunnel keeps failing to bind its SOCKS port."""

    def __init__(self, attempts: int, output_tail: str = ""):
        self.attempts = attempts
        self.output_tail = output_tail
        super().__init__(
            f"Failed to bind SOCKS5 port after {attempts} attempts. "
            "A network sharing service may be conflicting."
        )


class ProcessCrashedError(PaqetWrapperError):
    """Raised when the tunnel subprocess exits before becoming ready."""

    def __init__(self, exit_code: int | None, output_tail: str = ""):
        self.exit_code = exit_code
        self.output_tail = output_tail
        detail = output_tail or f"Exit code: {exit_code}"
        super().__init__(f"Process exited: {detail}")


class AdapterTimeoutError(PaqetWrapperError):
    """Raised when the virtual adapter does not come up in time."""

    pass


class RouteCommandError(PaqetWrapperError):
    """Raised when a routing, address or DNS mutation fails."""

    def __init__(self, step: str, output: str = ""):
        self.step = step
        self.output = output
        message = f"{step} failed"
        if output:
            message = f"{message}: {output}"
        super().__init__(message)


class StopNonConvergentError(PaqetWrapperError):
    """Raised when a process survives every termination attempt."""

    def __init__(self, pids: list[int]):
        self.pids = pids
        super().__init__(f"Failed to stop processes: {', '.join(map(str, pids))}")


class OperationCancelledError(PaqetWrapperError):
    """Raised when an in-flight operation is cancelled by a stop request."""

    pass


class OperationInProgressError(PaqetWrapperError):
    """Raised when a connect or disconnect is already running."""

    pass


class TunnelNotReadyError(PaqetWrapperError):
    """Raised when full-tunnel routing is requested before the SOCKS port is live."""

    pass
