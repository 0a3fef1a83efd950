from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable
from urllib.parse import urlsplit

from src.app.domain.errors import BlockedError

logger = logging.getLogger(__name__)

Resolver = Callable[[str, int], Awaitable[list[str]]]

# Ranges that are not covered by ipaddress' is_private / is_global flags on
# every interpreter version, listed explicitly.
BLOCKED_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.0.2.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "198.51.100.0/24",
        "203.0.113.0/24",
        "224.0.0.0/4",
        "240.0.0.0/4",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)


async def resolve_host(host: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


def is_public_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    if any(ip in network for network in BLOCKED_NETWORKS if network.version == ip.version):
        return False

    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    ) and ip.is_global


class SsrfGuard:
    """
    Rejects URLs that could reach internal infrastructure.

    Only http/https without embedded credentials are accepted, and every
    address the host resolves to must be public. The fetcher calls
    ``validate`` again for each redirect hop.
    """

    def __init__(self, resolver: Resolver | None = None):
        self._resolve = resolver or resolve_host

    async def validate(self, url: str) -> list[str]:
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as error:
            raise BlockedError(url, "malformed URL") from error

        scheme = parts.scheme.lower()
        if scheme not in ("http", "https"):
            raise BlockedError(url, f"scheme '{parts.scheme or 'none'}' is not allowed")
        if parts.username or parts.password:
            raise BlockedError(url, "credentials in URL are not allowed")

        host = parts.hostname
        if not host:
            raise BlockedError(url, "missing host")

        addresses = await self._addresses_for(url, host, port or (443 if scheme == "https" else 80))
        if not addresses:
            raise BlockedError(url, "host did not resolve")

        blocked = [address for address in addresses if not is_public_address(address)]
        if blocked:
            logger.warning("ssrf.blocked url=%s host=%s addresses=%s", url, host, blocked)
            raise BlockedError(url, f"host resolves to non-public address {blocked[0]}")

        return addresses

    async def _addresses_for(self, url: str, host: str, port: int) -> list[str]:
        try:
            ipaddress.ip_address(host)
            return [host]
        except ValueError:
            pass

        try:
            return await self._resolve(host, port)
        except (OSError, UnicodeError) as error:
            logger.info("ssrf.dns_failed host=%s error=%s", host, error)
            raise BlockedError(url, "DNS resolution failed") from error
