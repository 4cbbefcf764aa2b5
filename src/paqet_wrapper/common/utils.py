"""Utility functions for paqet wrapper."""

import ipaddress
from typing import Any

MIN_PORT = 1
MAX_PORT = 65535

DEFAULT_SERVER_PORT = 443

SENSITIVE_FIELDS = {
    "key",
    "password",
    "secret",
    "token",
}


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if not isinstance(port, int) or not (MIN_PORT <= port <= MAX_PORT):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def is_ipv4(value: str) -> bool:
    """Return True if value is a literal IPv4 address."""
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def split_host_port(address: str, default_port: int = DEFAULT_SERVER_PORT) -> tuple[str, int]:
    """Split ``host:port`` into its parts.

    Handles bracketed IPv6 (``[::1]:8443``) and bare hosts without a port.

    Args:
        address: Server address as written in the tunnel config
        default_port: Port returned when the address carries none

    Returns:
        Tuple of (host, port)
    """
    address = address.strip()
    if not address:
        return address, default_port

    if address.startswith("["):
        end = address.find("]")
        if end <= 0:
            return address, default_port
        host = address[1:end]
        rest = address[end + 1 :]
        if rest.startswith(":") and rest[1:].isdigit():
            return host, int(rest[1:])
        return host, default_port

    host, sep, port = address.rpartition(":")
    if sep and host and port.isdigit() and ":" not in host:
        return host, int(port)
    return address, default_port


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while preserving some characters for debugging.

    Args:
        value: Sensitive string to mask (e.g., transport key, password)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[-show_chars:]


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of data with sensitive fields masked.

    Args:
        data: Dictionary potentially containing sensitive data

    Returns:
        Sanitized dictionary safe for logging
    """
    sanitized = {}
    for key, value in data.items():
        lowered = key.lower()
        if lowered != "event" and any(field in lowered for field in SENSITIVE_FIELDS):
            sanitized[key] = mask_sensitive_data(str(value) if value else None)
        else:
            sanitized[key] = value

    return sanitized
