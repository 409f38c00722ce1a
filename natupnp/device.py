"""UPnP IGD device control channel.

Resolves the WAN connection service from a device description document and
invokes SOAP actions against its control URL.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin
from xml.sax.saxutils import escape

import aiohttp
import defusedxml.ElementTree as ET  # noqa: N817

from natupnp.exceptions import GatewayFault, MalformedResponse, NATUPnPError

logger = logging.getLogger(__name__)

# Services able to manage port mappings, in order of preference
WAN_SERVICE_TYPES = (
    "urn:schemas-upnp-org:service:WANIPConnection:1",
    "urn:schemas-upnp-org:service:WANIPConnection:2",
    "urn:schemas-upnp-org:service:WANPPPConnection:1",
)

SOAP_ENVELOPE_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_ENCODING_NS = "http://schemas.xmlsoap.org/soap/encoding/"

ActionArgs = Sequence[tuple[str, Any]]


@dataclass(frozen=True)
class ServiceInfo:
    """Control endpoint of the WAN connection service."""

    service_type: str
    control_url: str


def local_name(tag: str) -> str:
    """Strip the ``{namespace}`` part ElementTree puts in front of a tag."""
    return tag.rsplit("}", 1)[-1]


def find_local(root: Any, name: str) -> Any:
    """Return the first element below ``root`` whose local name is ``name``.

    Gateways differ in whether they namespace-qualify elements such as
    ``<u:GetExternalIPAddressResponse>``, so lookups ignore the namespace.
    """
    for elem in root.iter():
        if local_name(elem.tag) == name:
            return elem
    return None


def parse_device_description(xml_content: str, location: str) -> ServiceInfo:
    """Find the WAN connection service in a device description.

    Args:
        xml_content: Device description XML
        location: URL the description was fetched from

    Returns:
        ServiceInfo with an absolute control URL

    Raises:
        MalformedResponse: If the XML is invalid or has no usable service

    """
    try:
        root = ET.fromstring(xml_content)  # noqa: S314  # nosec B314 - defusedxml
    except ET.ParseError as e:
        msg = f"Failed to parse device description XML: {e}"
        raise MalformedResponse(msg, {"location": location}, body=xml_content) from e

    base_url = location
    url_base = find_local(root, "URLBase")
    if url_base is not None and url_base.text and url_base.text.strip():
        base_url = url_base.text.strip()

    candidates: dict[str, str] = {}
    for elem in root.iter():
        if local_name(elem.tag) != "service":
            continue
        fields = {local_name(child.tag): (child.text or "").strip() for child in elem}
        service_type = fields.get("serviceType", "")
        control_url = fields.get("controlURL", "")
        if service_type in WAN_SERVICE_TYPES and control_url:
            candidates.setdefault(service_type, control_url)

    for service_type in WAN_SERVICE_TYPES:
        if service_type in candidates:
            return ServiceInfo(
                service_type=service_type,
                control_url=urljoin(base_url, candidates[service_type]),
            )

    msg = "No WAN connection service found in device description"
    raise MalformedResponse(msg, {"location": location}, body=xml_content)


def build_soap_action(action_name: str, service_type: str, args: ActionArgs) -> str:
    """Build SOAP action request body.

    Args:
        action_name: SOAP action name (e.g., "AddPortMapping")
        service_type: UPnP service type used as the action namespace
        args: Ordered (name, value) pairs

    Returns:
        SOAP request XML string

    """
    param_xml = "".join(f"<{name}>{escape(str(value))}</{name}>" for name, value in args)
    return (
        '<?xml version="1.0"?>'
        f'<s:Envelope xmlns:s="{SOAP_ENVELOPE_NS}" s:encodingStyle="{SOAP_ENCODING_NS}">'
        "<s:Body>"
        f'<u:{action_name} xmlns:u="{service_type}">{param_xml}</u:{action_name}>'
        "</s:Body>"
        "</s:Envelope>"
    )


def _fault_from_xml(action_name: str, status: int, body: str, fault: Any) -> GatewayFault:
    code: int | None = None
    description = ""
    if fault is not None:
        code_elem = find_local(fault, "errorCode")
        if code_elem is not None and code_elem.text:
            try:
                code = int(code_elem.text.strip())
            except ValueError:
                logger.debug("Non-numeric UPnP error code: %s", code_elem.text)
        desc_elem = find_local(fault, "errorDescription")
        if desc_elem is None:
            desc_elem = find_local(fault, "faultstring")
        if desc_elem is not None and desc_elem.text:
            description = desc_elem.text.strip()

    msg = f"{action_name} failed: HTTP {status}"
    if code is not None:
        msg += f", UPnP error {code}"
    if description:
        msg += f" ({description})"
    return GatewayFault(msg, code=code, description=description, status=status, body=body)


def parse_soap_response(action_name: str, status: int, body: str) -> dict[str, str]:
    """Parse a SOAP reply into a dict of response fields.

    Raises:
        GatewayFault: On a non-200 status or a SOAP fault in the body
        MalformedResponse: If a 200 reply lacks ``<action>Response``

    """
    try:
        root = ET.fromstring(body)  # noqa: S314  # nosec B314 - defusedxml
    except ET.ParseError as e:
        if status != 200:
            raise _fault_from_xml(action_name, status, body, None) from e
        msg = f"Failed to parse SOAP response for {action_name}: {e}"
        raise MalformedResponse(msg, body=body) from e

    fault = find_local(root, "Fault")
    if fault is not None or status != 200:
        logger.debug("SOAP fault for %s (HTTP %d): %s", action_name, status, body[:1000])
        raise _fault_from_xml(action_name, status, body, fault)

    response = find_local(root, f"{action_name}Response")
    if response is None:
        msg = f"No {action_name}Response element in SOAP reply"
        raise MalformedResponse(msg, body=body)

    return {local_name(child.tag): child.text or "" for child in response}


class Device:
    """Control channel for one gateway device description."""

    def __init__(self, location: str, http_timeout: float = 10.0):
        """Initialize the channel.

        Args:
            location: Device description URL
            http_timeout: Total timeout for each HTTP request in seconds

        """
        self._location = location
        self.http_timeout = http_timeout
        self._service: ServiceInfo | None = None

    @property
    def description(self) -> str:
        """Device description URL this channel was built from."""
        return self._location

    def __repr__(self) -> str:
        return f"Device({self._location!r})"

    async def get_service(self) -> ServiceInfo:
        """Fetch the device description and resolve the WAN service.

        The result is cached for the lifetime of the channel.
        """
        if self._service is not None:
            return self._service

        try:
            async with aiohttp.ClientSession() as session, session.get(
                self._location,
                timeout=aiohttp.ClientTimeout(total=self.http_timeout),
            ) as response:
                status = response.status
                xml_content = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            msg = f"Error fetching device description: {e}"
            raise NATUPnPError(msg, {"location": self._location}) from e

        if status != 200:
            msg = f"Failed to fetch device description: HTTP {status}"
            raise NATUPnPError(msg, {"location": self._location})

        self._service = parse_device_description(xml_content, self._location)
        logger.debug(
            "Resolved %s at %s", self._service.service_type, self._service.control_url
        )
        return self._service

    async def run(self, action_name: str, args: ActionArgs = ()) -> dict[str, str]:
        """Invoke a SOAP action and return its response fields.

        Args:
            action_name: Action to invoke
            args: Ordered (name, value) pairs

        Returns:
            Response fields as raw strings

        Raises:
            GatewayFault: If the gateway rejects the action
            MalformedResponse: If the reply cannot be interpreted
            NATUPnPError: On transport errors

        """
        service = await self.get_service()
        soap_body = build_soap_action(action_name, service.service_type, args)
        headers = {
            "Content-Type": 'text/xml; charset="utf-8"',
            "SOAPAction": f'"{service.service_type}#{action_name}"',
        }

        try:
            async with aiohttp.ClientSession() as session, session.post(
                service.control_url,
                data=soap_body.encode("utf-8"),
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.http_timeout),
            ) as resp:
                status = resp.status
                response_xml = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            msg = f"Error sending SOAP action {action_name}: {e}"
            raise NATUPnPError(msg, {"control_url": service.control_url}) from e

        logger.debug("%s -> HTTP %d", action_name, status)
        return parse_soap_response(action_name, status, response_xml)
