"""End-to-end check that traffic actually leaves through the tunnel."""

import ipaddress

import requests

from .common.logging import get_logger
from .common.process import LOOPBACK
from .models import SOCKS_PORT

logger = get_logger(__name__)

IP_CHECK_ENDPOINTS = (
    "https://api.ipify.org",
    "https://ifconfig.me/ip",
    "https://icanhazip.com",
    "https://checkip.amazonaws.com",
)
USER_AGENT = "PaqetTunnel/1.0"


def check_tunnel_connectivity(
    socks_port: int = SOCKS_PORT,
    timeout: float = 5.0,
    endpoints: tuple[str, ...] = IP_CHECK_ENDPOINTS,
) -> str | None:
    """Fetch the public exit IP through the SOCKS5 proxy.

    Endpoints are tried in order until one answers with an IP address.
    Name resolution happens on the far side of the tunnel.

    Args:
        socks_port: Local SOCKS5 port of the tunnel
        timeout: Seconds allowed per endpoint
        endpoints: Plain-text "what is my IP" URLs

    Returns:
        The exit IP, or None when no endpoint answered
    """
    proxy = f"socks5h://{LOOPBACK}:{socks_port}"
    proxies = {"http": proxy, "https": proxy}

    for url in endpoints:
        try:
            response = requests.get(
                url,
                timeout=timeout,
                proxies=proxies,
                headers={"User-Agent": USER_AGENT},
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.debug("Connectivity check failed", url=url, error=str(e))
            continue

        body = response.text.strip()
        try:
            exit_ip = str(ipaddress.ip_address(body))
        except ValueError:
            logger.debug("Connectivity check returned no address", url=url, body=body[:45])
            continue

        logger.info("Tunnel connectivity confirmed", exit_ip=exit_ip, url=url)
        return exit_ip

    logger.warning("Tunnel connectivity check failed on every endpoint", port=socks_port)
    return None
