"""Common utilities and shared functionality."""

from .commands import CommandResult, run_command
from .exceptions import (
    AdapterTimeoutError,
    BinaryMissingError,
    BindTimeoutError,
    CommandError,
    CommandTimeoutError,
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
from .logging import get_logger, setup_logging
from .polling import poll_until
from .process import OutputCapture, find_processes, is_port_listening, terminate_process_tree
from .utils import (
    MAX_PORT,
    MIN_PORT,
    is_ipv4,
    mask_sensitive_data,
    sanitize_log_data,
    split_host_port,
    validate_port,
)

__all__ = [
    # Commands and processes
    "CommandResult",
    "run_command",
    "OutputCapture",
    "find_processes",
    "is_port_listening",
    "terminate_process_tree",
    "poll_until",
    # Exceptions
    "PaqetWrapperError",
    "ConfigurationError",
    "BinaryMissingError",
    "CommandError",
    "CommandTimeoutError",
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
    # Utils
    "validate_port",
    "is_ipv4",
    "split_host_port",
    "mask_sensitive_data",
    "sanitize_log_data",
    "MIN_PORT",
    "MAX_PORT",
]
