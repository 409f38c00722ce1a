"""Gateway client: discovery plus the port mapping operations."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from pydantic import ValidationError

from natupnp.device import Device
from natupnp.exceptions import (
    ConfigurationError,
    DiscoveryError,
    DiscoveryTimeout,
    GatewayFault,
    MalformedResponse,
)
from natupnp.models import (
    DEFAULT_DESCRIPTION,
    DEFAULT_TTL,
    IGD_DEVICE_TYPE,
    AddressSpec,
    Announcement,
    ClientConfig,
    Endpoint,
    Gateway,
    GetMappingOptions,
    MappingOptions,
    NormalizedPorts,
    PortMapping,
    PortSpec,
)
from natupnp.ssdp import Ssdp, SsdpSearch

logger = logging.getLogger(__name__)


def _to_port(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def to_port_spec(addr: AddressSpec) -> PortSpec:
    """Convert a caller-supplied address into a PortSpec.

    Accepts a port number (integral floats included), a numeric string, a
    PortSpec, or a mapping with ``port``/``host`` keys. An unusable port is
    left unset; a mapping keeps its host either way.
    """
    if isinstance(addr, PortSpec):
        return addr
    if isinstance(addr, Mapping):
        host = addr.get("host")
        return PortSpec(
            port=_to_port(addr.get("port")),
            host=str(host) if host is not None else None,
        )
    return PortSpec(port=_to_port(addr))


def normalize_options(options: MappingOptions) -> NormalizedPorts:
    """Normalize both sides of a mapping request without applying defaults."""
    return NormalizedPorts(
        remote=to_port_spec(options.public),
        internal=to_port_spec(options.private),
    )


def _coerce(options: Any, kwargs: dict[str, Any], cls: type) -> Any:
    if options is None:
        return cls(**kwargs)
    if isinstance(options, Mapping):
        return cls(**{**options, **kwargs})
    if kwargs:
        msg = "Pass either an options object or keyword arguments, not both"
        raise TypeError(msg)
    return options


def _to_port_mapping(fields: dict[str, str], address: str) -> PortMapping:
    try:
        mapping = PortMapping(
            public=Endpoint(
                host=fields.get("NewRemoteHost") or "",
                port=int(fields["NewExternalPort"]),
            ),
            private=Endpoint(
                host=fields.get("NewInternalClient", ""),
                port=int(fields["NewInternalPort"]),
            ),
            protocol=fields.get("NewProtocol", "").lower(),
            enabled=fields.get("NewEnabled") == "1",
            description=fields.get("NewPortMappingDescription", ""),
            ttl=int(fields.get("NewLeaseDuration") or 0),
        )
    except (KeyError, ValueError) as e:
        msg = f"Invalid port mapping entry: {e}"
        raise MalformedResponse(msg, {"fields": fields}) from e
    return replace(mapping, local=mapping.private.host == address)


def _matches(mapping: PortMapping, options: GetMappingOptions) -> bool:
    if options.local and not mapping.local:
        return False
    pattern = options.description
    if pattern is None or pattern == "":
        return True
    if isinstance(pattern, re.Pattern):
        return pattern.search(mapping.description) is not None
    return pattern in mapping.description


async def _first_announcement(search: SsdpSearch) -> Announcement | None:
    async for announcement in search:
        return announcement
    return None


class Client:
    """Async UPnP IGD client."""

    def __init__(self, config: ClientConfig | None = None, **overrides: Any):
        """Initialize the client.

        Args:
            config: Client configuration (defaults when None)
            **overrides: ClientConfig fields overriding ``config``

        Raises:
            ConfigurationError: On invalid settings, including a ``url``
                given without the local ``address``

        """
        try:
            if config is None:
                config = ClientConfig(**overrides)
            elif overrides:
                config = ClientConfig(**{**config.model_dump(), **overrides})
        except ValidationError as e:
            msg = f"Invalid client configuration: {e}"
            raise ConfigurationError(msg) from e

        if config.url and not config.address:
            msg = "A local address is required when the gateway url is given"
            raise ConfigurationError(msg, {"url": config.url})

        self.config = config
        self.url = config.url
        self._ssdp = Ssdp(timeout=config.timeout / 1000)
        self._gateway: Gateway | None = None
        self._resolving = False
        self.logger = logging.getLogger(__name__)

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    async def get_gateway(self, refresh: bool = False) -> Gateway:
        """Resolve the gateway to talk to.

        Args:
            refresh: With caching enabled, rediscover instead of reusing the
                cached gateway

        Raises:
            DiscoveryTimeout: If no gateway answered in time. With caching
                enabled, ``stale_gateway`` carries the last known gateway.
            DiscoveryError: If a resolution is already running

        """
        if self.url:
            if self._gateway is None:
                self._gateway = Gateway(
                    gateway=Device(self.url, http_timeout=self.config.http_timeout),
                    address=self.config.address or "",
                )
            return self._gateway

        if self.config.cache_gateway and self._gateway is not None and not refresh:
            return self._gateway

        if self._resolving:
            msg = "Gateway resolution already in progress"
            raise DiscoveryError(msg)

        self._resolving = True
        try:
            announcement = await self._discover()
        finally:
            self._resolving = False

        if announcement is None:
            stale = self._gateway if self.config.cache_gateway else None
            msg = "Connection timed out while searching for the gateway."
            raise DiscoveryTimeout(
                msg, {"timeout_ms": self.config.timeout}, stale_gateway=stale
            )

        gateway = Gateway(
            gateway=Device(announcement.location, http_timeout=self.config.http_timeout),
            address=announcement.address,
        )
        self.logger.debug(
            "Using gateway %s via %s", announcement.location, announcement.address
        )
        if self.config.cache_gateway:
            self._gateway = gateway
        return gateway

    async def _discover(self) -> Announcement | None:
        timeout = self.config.timeout / 1000
        search = await self._ssdp.search(IGD_DEVICE_TYPE, timeout=timeout)
        try:
            return await asyncio.wait_for(_first_announcement(search), timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            search.end()

    async def create_mapping(
        self, options: MappingOptions | Mapping[str, Any] | None = None, **kwargs: Any
    ) -> dict[str, str]:
        """Add a port mapping.

        Args:
            options: MappingOptions, a dict of its fields, or None with
                keyword arguments (public, private, protocol, description, ttl)

        Returns:
            Raw AddPortMapping response fields

        """
        options = _coerce(options, kwargs, MappingOptions)
        ports = normalize_options(options)
        if ports.remote.port is None:
            msg = "A public port is required"
            raise ValueError(msg)

        gw = await self.get_gateway()
        internal_port = ports.internal.port
        if internal_port is None:
            internal_port = ports.remote.port
        ttl = options.ttl if options.ttl is not None else DEFAULT_TTL

        return await gw.gateway.run(
            "AddPortMapping",
            [
                ("NewRemoteHost", ports.remote.host or ""),
                ("NewExternalPort", ports.remote.port),
                ("NewProtocol", (options.protocol or "TCP").upper()),
                ("NewInternalPort", internal_port),
                ("NewInternalClient", ports.internal.host or gw.address),
                ("NewEnabled", 1),
                ("NewPortMappingDescription", options.description or DEFAULT_DESCRIPTION),
                ("NewLeaseDuration", ttl),
            ],
        )

    async def remove_mapping(
        self, options: MappingOptions | Mapping[str, Any] | None = None, **kwargs: Any
    ) -> dict[str, str]:
        """Delete a port mapping identified by public host, port and protocol."""
        options = _coerce(options, kwargs, MappingOptions)
        ports = normalize_options(options)
        if ports.remote.port is None:
            msg = "A public port is required"
            raise ValueError(msg)

        gw = await self.get_gateway()
        return await gw.gateway.run(
            "DeletePortMapping",
            [
                ("NewRemoteHost", ports.remote.host or ""),
                ("NewExternalPort", ports.remote.port),
                ("NewProtocol", (options.protocol or "TCP").upper()),
            ],
        )

    async def get_mappings(
        self,
        options: GetMappingOptions | Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> list[PortMapping]:
        """Enumerate port mappings with GetGenericPortMappingEntry.

        Entries are requested one index at a time until the gateway faults,
        which is the only end-of-list marker the protocol offers. A fault on
        the first index means there are no mappings.

        Args:
            options: Filters ``local`` and ``description`` (substring, or a
                compiled regular expression)

        """
        options = _coerce(options, kwargs, GetMappingOptions)
        gw = await self.get_gateway()
        results: list[PortMapping] = []
        index = 0

        while True:
            try:
                fields = await gw.gateway.run(
                    "GetGenericPortMappingEntry", [("NewPortMappingIndex", index)]
                )
            except GatewayFault as e:
                if index > 0 and not e.is_index_out_of_range:
                    self.logger.debug(
                        "GetGenericPortMappingEntry failed at index %d: %s", index, e
                    )
                break
            index += 1

            mapping = _to_port_mapping(fields, gw.address)
            if _matches(mapping, options):
                results.append(mapping)

        return results

    async def get_public_ip(self) -> str:
        """Get the gateway's external IP address."""
        gw = await self.get_gateway()
        fields = await gw.gateway.run("GetExternalIPAddress", [])
        if "NewExternalIPAddress" not in fields:
            msg = "No external IP in response"
            raise MalformedResponse(msg, {"fields": fields})
        return str(fields["NewExternalIPAddress"])

    def close(self) -> None:
        """Release discovery sockets and drop the cached gateway.

        Safe to call more than once. A closed client cannot discover again.
        """
        self._ssdp.close()
        if not self.url:
            self._gateway = None
