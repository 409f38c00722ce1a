"""Data models for nat-upnp.

Protocol records are frozen dataclasses; client configuration is a
validated pydantic model.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from natupnp.device import Device

IGD_DEVICE_TYPE = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"

DEFAULT_DESCRIPTION = "node:nat:upnp"
DEFAULT_TTL = 60 * 30
DEFAULT_TIMEOUT_MS = 1800


@dataclass(frozen=True)
class Announcement:
    """A single SSDP reply that matched the search target."""

    location: str
    address: str  # local interface address whose socket received the reply
    st: str = ""
    usn: str = ""
    server: str = ""


@dataclass(frozen=True)
class Gateway:
    """A resolved gateway and the local address used to reach it."""

    gateway: Device
    address: str


@dataclass(frozen=True)
class Endpoint:
    """Host/port pair on one side of a port mapping."""

    host: str
    port: int


@dataclass(frozen=True)
class PortMapping:
    """Port mapping as reported by the gateway."""

    public: Endpoint
    private: Endpoint
    protocol: str  # "tcp" or "udp"
    enabled: bool
    description: str
    ttl: int
    local: bool = False


@dataclass(frozen=True)
class PortSpec:
    """Canonical form of one side of a mapping request.

    Unset fields stay None; callers apply their own defaults.
    """

    port: int | None = None
    host: str | None = None


AddressSpec = Union[int, float, str, PortSpec, Mapping[str, Any], None]


@dataclass
class MappingOptions:
    """Options accepted by create_mapping and remove_mapping."""

    public: AddressSpec = None
    private: AddressSpec = None
    protocol: str | None = None
    description: str | None = None
    ttl: int | None = None


@dataclass
class GetMappingOptions:
    """Filters for get_mappings."""

    local: bool = False
    description: str | re.Pattern[str] | None = None


@dataclass(frozen=True)
class NormalizedPorts:
    """Result of normalize_options: one PortSpec per side."""

    remote: PortSpec = field(default_factory=PortSpec)
    internal: PortSpec = field(default_factory=PortSpec)


class ClientConfig(BaseModel):
    """Gateway client configuration."""

    timeout: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        gt=0,
        description="SSDP discovery timeout in milliseconds",
    )
    url: str | None = Field(
        default=None,
        description="Device description URL; skips discovery when set",
    )
    address: str | None = Field(
        default=None,
        description="Local interface address to use together with url",
    )
    cache_gateway: bool = Field(
        default=False,
        description="Keep the first resolved gateway for the client's lifetime",
    )
    http_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=300.0,
        description="Total timeout in seconds for each HTTP request to the gateway",
    )

    @field_validator("url", "address")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v
