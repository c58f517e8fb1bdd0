"""Outbound request guard for the crawler.

Website domains are supplied by tenants, so every navigation is checked
before it is made: only http(s), no internal service ports, and no host
that resolves to a loopback, private, link-local or cloud metadata address.
"""

import ipaddress
import logging
import socket
from typing import List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

BLOCKED_NETWORKS = [
    ipaddress.ip_network(cidr) for cidr in (
        '0.0.0.0/8', '10.0.0.0/8', '100.64.0.0/10', '127.0.0.0/8',
        '169.254.0.0/16', '172.16.0.0/12', '192.168.0.0/16',
        '224.0.0.0/4', '240.0.0.0/4',
        '::1/128', 'fc00::/7', 'fe80::/10',
    )
]

# Database, cache and remote-shell ports that a web page never lives on
BLOCKED_PORTS = {22, 23, 25, 3306, 3389, 5432, 6379, 9200, 11211, 27017}

BLOCKED_HOSTNAMES = {
    'localhost', 'metadata', 'metadata.google.internal', 'metadata.azure.com',
}

ALLOWED_SCHEMES = {'http', 'https'}


class SSRFError(Exception):
    """Raised when a URL points somewhere the crawler must not go."""


def is_blocked_ip(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return True
    if ip.version == 6 and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return any(ip in network for network in BLOCKED_NETWORKS)


def resolve_addresses(hostname: str) -> List[str]:
    try:
        infos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as e:
        raise SSRFError(f"Failed to resolve hostname {hostname}: {e}")
    return sorted({info[4][0] for info in infos})


def check_url_ssrf(url: str, allow_private: bool = False) -> None:
    """Raise ``SSRFError`` unless ``url`` is safe to fetch.

    Args:
        url: absolute URL about to be requested
        allow_private: skip address checks (local development only)
    """
    parsed = urlparse(url)
    scheme = (parsed.scheme or '').lower()
    if scheme not in ALLOWED_SCHEMES:
        raise SSRFError(f"Scheme '{parsed.scheme}' not allowed")

    hostname = (parsed.hostname or '').lower()
    if not hostname:
        raise SSRFError("URL must have a hostname")

    try:
        port: Optional[int] = parsed.port
    except ValueError:
        raise SSRFError(f"Invalid port in {url}")
    if port in BLOCKED_PORTS:
        raise SSRFError(f"Port {port} is blocked")

    if allow_private:
        return

    if hostname in BLOCKED_HOSTNAMES or hostname.endswith('.internal'):
        logger.warning(f"SSRF protection blocked URL: {url}")
        raise SSRFError(f"Hostname '{hostname}' is blocked")

    blocked = [address for address in resolve_addresses(hostname) if is_blocked_ip(address)]
    if blocked:
        logger.warning(f"SSRF protection blocked URL: {url} resolves to {blocked}")
        raise SSRFError(f"Hostname {hostname} resolves to blocked address(es): {blocked}")
