"""UPnP IGD port mapping client.

Discovers the local NAT gateway over SSDP and manages its port mappings
through the WANIPConnection SOAP service.
"""

from natupnp.client import Client, normalize_options
from natupnp.device import Device
from natupnp.exceptions import (
    ConfigurationError,
    DiscoveryError,
    DiscoveryTimeout,
    GatewayFault,
    MalformedResponse,
    NATUPnPError,
)
from natupnp.models import (
    Announcement,
    ClientConfig,
    Endpoint,
    Gateway,
    GetMappingOptions,
    MappingOptions,
    PortMapping,
    PortSpec,
)
from natupnp.ssdp import Ssdp

__version__ = "0.1.0"

__all__ = [
    "Announcement",
    "Client",
    "ClientConfig",
    "ConfigurationError",
    "Device",
    "DiscoveryError",
    "DiscoveryTimeout",
    "Endpoint",
    "Gateway",
    "GatewayFault",
    "GetMappingOptions",
    "MalformedResponse",
    "MappingOptions",
    "NATUPnPError",
    "PortMapping",
    "PortSpec",
    "Ssdp",
    "normalize_options",
]
