"""
Network policy: URL validation and private-address exclusion (SSRF guard).

A URL passes only if its scheme is http(s), it carries no credentials, its
hostname is not reserved, and every address it names or resolves to lies
outside the private/reserved ranges below.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

import httpx

from toolguard._types import ErrorCode
from toolguard.config import BLOCKED_HOSTNAMES, BLOCKED_SUFFIXES
from toolguard.errors import FetchError, PolicyViolation

logger = logging.getLogger(__name__)

Resolver = Callable[[str, int], Awaitable[Sequence[str]]]
"""Async callable returning every address a hostname resolves to."""

ALLOWED_SCHEMES = frozenset({"http", "https"})

PRIVATE_IPV4_NETWORKS: tuple[ipaddress.IPv4Network, ...] = tuple(
    ipaddress.IPv4Network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "192.0.0.0/24",
        "192.0.2.0/24",
        "198.18.0.0/15",
        "198.51.100.0/24",
        "203.0.113.0/24",
        "224.0.0.0/4",
        "240.0.0.0/4",
    )
)

PRIVATE_IPV6_NETWORKS: tuple[ipaddress.IPv6Network, ...] = tuple(
    ipaddress.IPv6Network(cidr)
    for cidr in (
        "::/128",  # unspecified
        "::1/128",  # loopback
        "fc00::/7",  # unique local
        "fe80::/10",  # link local
        "ff00::/8",  # multicast
        "2001:db8::/32",  # documentation
    )
)


def _in_networks(value: int, networks: Sequence[ipaddress.IPv4Network | ipaddress.IPv6Network]) -> bool:
    for network in networks:
        mask = int(network.netmask)
        if value & mask == int(network.network_address):
            return True
    return False


def is_private_ip(ip: str) -> bool:
    """
    Return True if ``ip`` is in a private, reserved, loopback, link-local,
    multicast or documentation range.

    IPv4-mapped IPv6 addresses (``::ffff:a.b.c.d``) are checked against the
    IPv4 table. Strings that do not parse as an address count as private.
    """
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return True

    if isinstance(address, ipaddress.IPv6Address):
        mapped = address.ipv4_mapped
        if mapped is not None:
            return _in_networks(int(mapped), PRIVATE_IPV4_NETWORKS)
        return _in_networks(int(address), PRIVATE_IPV6_NETWORKS)
    return _in_networks(int(address), PRIVATE_IPV4_NETWORKS)


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


async def system_resolver(hostname: str, port: int) -> list[str]:
    """Resolve ``hostname`` to all of its addresses via getaddrinfo."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)
    addresses: list[str] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        address = str(sockaddr[0])
        if address not in addresses:
            addresses.append(address)
    return addresses


@dataclass(frozen=True)
class ResolvedURL:
    """
    A URL that has passed the network policy.

    Only NetworkPolicy.check_url creates these. ``addresses`` holds every
    validated address; it is empty when the host is an IP literal.
    """

    url: httpx.URL
    addresses: tuple[str, ...] = field(default_factory=tuple)

    @property
    def hostname(self) -> str:
        return self.url.host

    @property
    def pinned_address(self) -> str | None:
        return self.addresses[0] if self.addresses else None

    def connect_url(self, pin: bool = True, address: str | None = None) -> httpx.URL:
        """
        URL to hand to the transport, with the host replaced by a validated address.

        ``address`` picks one of ``addresses``; it defaults to the first.
        """
        if address is None:
            address = self.pinned_address
        elif address not in self.addresses:
            raise ValueError(f"{address} was not validated for {self.hostname}")
        if not pin or address is None:
            return self.url
        host = f"[{address}]" if ":" in address else address
        port = f":{self.url.port}" if self.url.port is not None else ""
        target = self.url.raw_path.decode("ascii")
        return httpx.URL(f"{self.url.scheme}://{host}{port}{target}")

    def __str__(self) -> str:
        return str(self.url)


@dataclass
class NetworkPolicy:
    """
    SSRF policy for outbound requests.

    Every resolved address is checked: one private address among public ones
    blocks the whole request.
    """

    resolver: Resolver = system_resolver
    blocked_hostnames: frozenset[str] = BLOCKED_HOSTNAMES
    blocked_suffixes: tuple[str, ...] = BLOCKED_SUFFIXES

    def is_blocked_hostname(self, hostname: str) -> bool:
        """Check reserved names (supports the configured suffixes)."""
        host = hostname.rstrip(".").lower()
        if host in self.blocked_hostnames:
            return True
        return any(host.endswith(suffix) for suffix in self.blocked_suffixes)

    async def check_url(self, raw_url: str | httpx.URL) -> ResolvedURL:
        """
        Validate a URL string and resolve its host.

        Raises:
            PolicyViolation: INVALID_URL or SSRF_BLOCKED.
            FetchError: DNS_FAILED if the hostname cannot be resolved.
        """
        url = self.parse_url(raw_url)
        hostname = url.host

        if self.is_blocked_hostname(hostname):
            logger.warning(f"Blocking hostname {hostname}")
            raise PolicyViolation(ErrorCode.SSRF_BLOCKED, "Blocked hostname", {"hostname": hostname})

        if is_ip_literal(hostname):
            if is_private_ip(hostname):
                logger.warning(f"Blocking IP address {hostname}")
                raise PolicyViolation(ErrorCode.SSRF_BLOCKED, "Blocked IP address", {"host": hostname})
            return ResolvedURL(url)

        port = url.port or (443 if url.scheme == "https" else 80)
        try:
            addresses = tuple(await self.resolver(url.raw_host.decode("ascii"), port))
        except (OSError, UnicodeError) as exc:
            raise FetchError(
                ErrorCode.DNS_FAILED,
                "DNS lookup failed",
                {"hostname": hostname, "message": str(exc)},
            ) from exc
        if not addresses:
            raise FetchError(
                ErrorCode.DNS_FAILED,
                "DNS lookup failed",
                {"hostname": hostname, "message": "no addresses returned"},
            )

        for address in addresses:
            if is_private_ip(address):
                logger.warning(f"Blocking {hostname}: resolves to {address}")
                raise PolicyViolation(
                    ErrorCode.SSRF_BLOCKED,
                    "Blocked resolved IP address",
                    {"hostname": hostname, "address": address},
                )

        logger.debug(f"Allowing {hostname} -> {', '.join(addresses)}")
        return ResolvedURL(url, addresses)

    @staticmethod
    def parse_url(raw_url: str | httpx.URL) -> httpx.URL:
        """
        Parse and structurally validate a URL.

        Raises:
            PolicyViolation: INVALID_URL.
        """
        try:
            url = raw_url if isinstance(raw_url, httpx.URL) else httpx.URL(raw_url)
        except (httpx.InvalidURL, TypeError) as exc:
            raise PolicyViolation(ErrorCode.INVALID_URL, "Invalid URL") from exc

        if url.scheme not in ALLOWED_SCHEMES:
            raise PolicyViolation(
                ErrorCode.INVALID_URL,
                "Only http:// and https:// URLs are allowed",
                {"protocol": f"{url.scheme}:"},
            )
        if url.userinfo:
            raise PolicyViolation(ErrorCode.INVALID_URL, "Userinfo in URL is not allowed")
        if not url.host:
            raise PolicyViolation(ErrorCode.INVALID_URL, "URL hostname is required")
        return url
