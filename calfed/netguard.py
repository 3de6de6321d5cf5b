# calfed/netguard.py
"""
Outbound URL safety checks.

Every URL this server fetches or posts to comes from a remote party, so
requests to internal addresses are refused before they are made:
- private ranges (10/8, 172.16/12, 192.168/16, fc00::/7)
- loopback, link-local, multicast, reserved and unspecified addresses
- shared address space (100.64/10)
- plain http, except to localhost when explicitly allowed
"""

import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable, List, Optional
from urllib.parse import urlsplit

from .errors import UnsafeUrlError

logger = logging.getLogger(__name__)

LOCALHOST_NAMES = {"localhost", "127.0.0.1", "::1"}
SHARED_ADDRESS_SPACE = ipaddress.ip_network("100.64.0.0/10")

DnsLookup = Callable[[str], Awaitable[List[str]]]


def is_private_address(address: str) -> bool:
    """Check whether an IP address literal is internal or reserved."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped

    if (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    ):
        return True

    return isinstance(ip, ipaddress.IPv4Address) and ip in SHARED_ADDRESS_SPACE


async def _system_lookup(host: str) -> List[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


class UrlGuard:
    """
    Validates remote URLs before any request is made.

    Args:
        allow_insecure_localhost: Permit http:// and loopback for localhost
        check_dns: Also resolve host names and check every address
        dns_lookup: Async resolver returning address strings (for tests)
    """

    def __init__(
        self,
        allow_insecure_localhost: bool = False,
        check_dns: bool = False,
        dns_lookup: Optional[DnsLookup] = None,
    ):
        self.allow_insecure_localhost = allow_insecure_localhost
        self.check_dns = check_dns
        self._lookup = dns_lookup or _system_lookup

    def _is_local_dev_host(self, host: str) -> bool:
        return self.allow_insecure_localhost and host in LOCALHOST_NAMES

    def check_url(self, url: str) -> str:
        """
        Synchronous checks on the URL text alone.

        Returns:
            The URL's host name (lower-cased, without port)

        Raises:
            UnsafeUrlError: If the scheme or host is not allowed
        """
        try:
            parts = urlsplit(url)
            host = (parts.hostname or "").lower()
        except ValueError:
            raise UnsafeUrlError(f"Malformed URL: {url!r}")

        if not host:
            raise UnsafeUrlError(f"URL has no host: {url!r}")

        if parts.scheme == "http":
            if not self._is_local_dev_host(host):
                raise UnsafeUrlError("Remote URLs must use https")
        elif parts.scheme != "https":
            raise UnsafeUrlError(f"Unsupported URL scheme: {parts.scheme!r}")

        if self._is_local_dev_host(host):
            return host

        if host == "localhost" or host.endswith(".localhost"):
            raise UnsafeUrlError("URL targets localhost")
        if is_private_address(host):
            raise UnsafeUrlError("URL targets a private address")

        return host

    async def ensure_safe(self, url: str) -> str:
        """Run the text checks and, if enabled, the DNS check."""
        host = self.check_url(url)
        if not self.check_dns or self._is_local_dev_host(host):
            return host

        try:
            addresses = await self._lookup(host)
        except OSError as e:
            # Left to the HTTP client to report as unreachable
            logger.debug(f"DNS lookup for {host} failed: {e}")
            return host

        for address in addresses:
            if is_private_address(address):
                logger.warning(f"Refusing {host}: resolves to private address {address}")
                raise UnsafeUrlError("URL resolves to a private address")
        return host
