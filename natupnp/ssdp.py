"""SSDP discovery engine.

Sends an M-SEARCH query from every local IPv4 interface and yields the
replies that match the requested search target. Each socket is bound to a
single interface address so that a reply can be attributed to the local
address the gateway actually sees.
"""

from __future__ import annotations

import asyncio
import logging
import math
import socket
from collections.abc import Iterable

import psutil

from natupnp.exceptions import DiscoveryError
from natupnp.models import Announcement

logger = logging.getLogger(__name__)

# SSDP constants
SSDP_MULTICAST_IP = "239.255.255.250"
SSDP_MULTICAST_PORT = 1900
SSDP_MULTICAST_TTL = 2
SSDP_DEFAULT_TIMEOUT = 5.0
SSDP_MAX_MX = 5
SSDP_RECV_SIZE = 4096
ANY_ADDRESS = "0.0.0.0"  # nosec B104 - wildcard bind for the no-interface fallback


def build_msearch_request(search_target: str, mx: int = 3) -> bytes:
    """Build SSDP M-SEARCH request (UPnP Device Architecture 1.1).

    Args:
        search_target: ST (Search Target) header value
        mx: Maximum seconds a device may wait before answering

    Returns:
        M-SEARCH request bytes

    """
    msg = (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_MULTICAST_IP}:{SSDP_MULTICAST_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {mx}\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    )
    return msg.encode("utf-8")


def parse_ssdp_response(response: bytes) -> dict[str, str]:
    """Parse SSDP response headers.

    Args:
        response: SSDP response bytes

    Returns:
        Dictionary of header fields with lower-cased names

    """
    headers: dict[str, str] = {}
    lines = response.decode("utf-8", errors="ignore").split("\r\n")
    for line in lines[1:]:  # Skip status line
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return headers


def route_address(remote_ip: str) -> str:
    """Return the local address the kernel routes to ``remote_ip`` from.

    Used for replies received on a wildcard-bound socket. Connecting a UDP
    socket sends nothing.

    Raises:
        OSError: If there is no route or the result is still the wildcard

    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect((remote_ip, SSDP_MULTICAST_PORT))
        address = sock.getsockname()[0]
    finally:
        sock.close()
    if address == ANY_ADDRESS:
        msg = f"No local address routes to {remote_ip}"
        raise OSError(msg)
    return address


def local_ipv4_addresses() -> list[str]:
    """Return the IPv4 address of every non-loopback interface."""
    addresses: list[str] = []
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            if addr.address.startswith("127."):
                continue
            if addr.address not in addresses:
                addresses.append(addr.address)
                logger.debug("Found interface %s with address %s", name, addr.address)
    return addresses


class SsdpProtocol(asyncio.DatagramProtocol):
    """Datagram handler for one interface socket of a search."""

    def __init__(self, search: SsdpSearch, address: str):
        self.search = search
        self.address = address

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.search.handle_datagram(data, addr, self.address)

    def error_received(self, exc: Exception) -> None:  # pragma: no cover - OS callback
        logger.debug("SSDP socket error on %s: %s", self.address, exc)


class SsdpSearch:
    """A running M-SEARCH, consumed as an async iterator of announcements.

    Iteration stops when :meth:`end` is called or when the search timeout
    elapses. Timing out is not an error; the iterator simply finishes.
    """

    def __init__(self, ssdp: Ssdp, search_target: str, timeout: float):
        self.ssdp = ssdp
        self.search_target = search_target
        self.timeout = timeout
        self.transports: list[asyncio.DatagramTransport] = []
        self._queue: asyncio.Queue[Announcement | None] = asyncio.Queue()
        self._timer: asyncio.TimerHandle | None = None
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    async def start(self, addresses: Iterable[str]) -> None:
        """Open one socket per address and send the query from each."""
        loop = asyncio.get_running_loop()
        mx = max(1, min(SSDP_MAX_MX, math.ceil(self.timeout)))
        request = build_msearch_request(self.search_target, mx)

        for address in addresses:
            try:
                sock = self._open_socket(address)
            except OSError as e:
                logger.debug("Cannot open SSDP socket on %s: %s", address, e)
                continue
            try:
                transport, _ = await loop.create_datagram_endpoint(
                    lambda address=address: SsdpProtocol(self, address),
                    sock=sock,
                )
            except OSError as e:
                sock.close()
                logger.debug("Cannot create SSDP endpoint on %s: %s", address, e)
                continue
            self.transports.append(transport)
            transport.sendto(request, (SSDP_MULTICAST_IP, SSDP_MULTICAST_PORT))
            logger.debug(
                "Sent M-SEARCH for %s from %s (%d bytes)",
                self.search_target,
                address,
                len(request),
            )

        if not self.transports:
            self.end()
            msg = "Could not open an SSDP socket on any interface"
            raise DiscoveryError(msg, {"search_target": self.search_target})

        self._timer = loop.call_later(self.timeout, self.end)

    @staticmethod
    def _open_socket(address: str) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(
                socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, SSDP_MULTICAST_TTL
            )
            if address != ANY_ADDRESS:
                sock.setsockopt(
                    socket.IPPROTO_IP, socket.IP_MULTICAST_IF, socket.inet_aton(address)
                )
            sock.bind((address, 0))
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return sock

    def handle_datagram(self, data: bytes, addr: tuple[str, int], address: str) -> None:
        """Queue an announcement if the reply matches our search target."""
        if self._ended:
            return
        headers = parse_ssdp_response(data)
        st = headers.get("st", "")
        location = headers.get("location", "")
        if st != self.search_target or not location:
            logger.debug(
                "Ignoring SSDP reply from %s:%d (ST=%s)", addr[0], addr[1], st or "(empty)"
            )
            return
        if address == ANY_ADDRESS:
            try:
                address = route_address(addr[0])
            except OSError as e:
                logger.debug("Cannot attribute SSDP reply from %s: %s", addr[0], e)
                return
        logger.debug("SSDP reply from %s:%d on %s: %s", addr[0], addr[1], address, location)
        self._queue.put_nowait(
            Announcement(
                location=location,
                address=address,
                st=st,
                usn=headers.get("usn", ""),
                server=headers.get("server", ""),
            )
        )

    def end(self) -> None:
        """Stop listening and release this search's sockets. Idempotent."""
        if self._ended:
            return
        self._ended = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for transport in self.transports:
            transport.close()
        self.transports.clear()
        self._queue.put_nowait(None)
        self.ssdp.search_finished(self)

    def __aiter__(self) -> SsdpSearch:
        return self

    async def __anext__(self) -> Announcement:
        if self._ended and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None or self._ended:
            raise StopAsyncIteration
        return item


class Ssdp:
    """SSDP discovery engine owning at most one running search."""

    def __init__(
        self,
        interfaces: Iterable[str] | None = None,
        timeout: float = SSDP_DEFAULT_TIMEOUT,
    ):
        """Initialize the engine.

        Args:
            interfaces: Local IPv4 addresses to search from (None to enumerate)
            timeout: Default search duration in seconds

        """
        self.interfaces = list(interfaces) if interfaces is not None else None
        self.timeout = timeout
        self._active: SsdpSearch | None = None
        self._closed = False

    async def search(
        self, search_target: str, timeout: float | None = None
    ) -> SsdpSearch:
        """Start an M-SEARCH for ``search_target``.

        Raises:
            DiscoveryError: If a search is already running or the engine is closed

        """
        if self._closed:
            msg = "SSDP engine is closed"
            raise DiscoveryError(msg)
        if self._active is not None:
            msg = "An SSDP search is already in progress"
            raise DiscoveryError(msg, {"search_target": self._active.search_target})

        addresses = self.interfaces
        if addresses is None:
            addresses = local_ipv4_addresses()
        if not addresses:
            logger.debug("No IPv4 interfaces found, searching from 0.0.0.0")
            addresses = [ANY_ADDRESS]

        search = SsdpSearch(self, search_target, timeout or self.timeout)
        self._active = search
        try:
            await search.start(addresses)
        except BaseException:
            search.end()
            raise
        return search

    def search_finished(self, search: SsdpSearch) -> None:
        if self._active is search:
            self._active = None

    def close(self) -> None:
        """Release all sockets. Safe to call more than once."""
        if self._active is not None:
            self._active.end()
        self._closed = True
