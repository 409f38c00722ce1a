"""Exception hierarchy for nat-upnp.

Every error raised by the library derives from :class:`NATUPnPError`, which
carries a human-readable message plus an optional ``details`` mapping for
diagnostics.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from natupnp.models import Gateway

# UPnP IGD error code for GetGenericPortMappingEntry past the last entry
ARRAY_INDEX_INVALID = 713


class NATUPnPError(Exception):
    """Base exception for all nat-upnp errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class DiscoveryError(NATUPnPError):
    """SSDP discovery errors."""


class DiscoveryTimeout(DiscoveryError):
    """No gateway answered the discovery query before the deadline.

    When the client caches gateways, ``stale_gateway`` holds the last
    gateway that was resolved successfully. It is still usable, but the
    refresh that raised this error did not confirm it.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        stale_gateway: Gateway | None = None,
    ):
        super().__init__(message, details)
        self.stale_gateway = stale_gateway


class MalformedResponse(NATUPnPError):
    """The gateway answered with something we could not interpret."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        body: str = "",
    ):
        super().__init__(message, details)
        self.body = body


class GatewayFault(NATUPnPError):
    """The gateway rejected an action with a SOAP fault."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        description: str = "",
        status: int | None = None,
        body: str = "",
    ):
        details: dict[str, Any] = {}
        if code is not None:
            details["code"] = code
        if status is not None:
            details["status"] = status
        super().__init__(message, details)
        self.code = code
        self.description = description
        self.status = status
        self.body = body

    @property
    def is_index_out_of_range(self) -> bool:
        """True for the fault that marks the end of mapping enumeration."""
        return self.code == ARRAY_INDEX_INVALID or "ArrayIndexInvalid" in self.body


class ConfigurationError(NATUPnPError):
    """Invalid client configuration."""
