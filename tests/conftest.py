"""Pytest configuration and shared fixtures for nat-upnp tests."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from natupnp.exceptions import GatewayFault, MalformedResponse
from natupnp.ssdp import SsdpSearch

LOCAL_ADDRESS = "192.168.1.20"
GATEWAY_LOCATION = "http://192.168.1.1:5000/rootDesc.xml"
IGD_ST = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"

INDEX_INVALID_BODY = (
    '<?xml version="1.0"?>'
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body>'
    "<s:Fault><faultcode>s:Client</faultcode><faultstring>UPnPError</faultstring>"
    '<detail><UPnPError xmlns="urn:schemas-upnp-org:control-1-0">'
    "<errorCode>713</errorCode><errorDescription>SpecifiedArrayIndexInvalid</errorDescription>"
    "</UPnPError></detail></s:Fault></s:Body></s:Envelope>"
)


def pytest_configure(config):
    """Register project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("unit", "marks tests as unit tests"),
        ("network", "marks tests that exercise protocol code with mocked I/O"),
        ("cli", "marks tests as CLI tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Drop handlers installed by setup_logging so later tests don't write to closed streams."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)


class FakeDevice:
    """In-memory gateway answering the WANIPConnection actions."""

    def __init__(self, external_ip: str = "203.0.113.5"):
        self.description = GATEWAY_LOCATION
        self.external_ip = external_ip
        self.entries: list[dict[str, str]] = []
        self.calls: list[tuple[str, list[tuple[str, Any]]]] = []
        self.fail_at: dict[int, Exception] = {}

    def add_entry(self, **fields: Any) -> None:
        entry = {
            "NewRemoteHost": "",
            "NewExternalPort": "0",
            "NewProtocol": "TCP",
            "NewInternalPort": "0",
            "NewInternalClient": LOCAL_ADDRESS,
            "NewEnabled": "1",
            "NewPortMappingDescription": "",
            "NewLeaseDuration": "0",
        }
        entry.update({key: str(value) for key, value in fields.items()})
        self.entries.append(entry)

    async def run(self, action_name: str, args=()) -> dict[str, str]:
        args = list(args)
        self.calls.append((action_name, args))
        params = {name: str(value) for name, value in args}

        if action_name == "GetExternalIPAddress":
            return {"NewExternalIPAddress": self.external_ip}

        if action_name == "AddPortMapping":
            self._remove(params)
            self.entries.append(params)
            return {}

        if action_name == "DeletePortMapping":
            if not self._remove(params):
                msg = "DeletePortMapping failed: HTTP 500, UPnP error 714"
                raise GatewayFault(msg, code=714, description="NoSuchEntryInArray", status=500)
            return {}

        if action_name == "GetGenericPortMappingEntry":
            index = int(params["NewPortMappingIndex"])
            if index in self.fail_at:
                raise self.fail_at[index]
            if index >= len(self.entries):
                msg = "GetGenericPortMappingEntry failed: HTTP 500, UPnP error 713"
                raise GatewayFault(
                    msg,
                    code=713,
                    description="SpecifiedArrayIndexInvalid",
                    status=500,
                    body=INDEX_INVALID_BODY,
                )
            return dict(self.entries[index])

        msg = f"Unknown action {action_name}"
        raise MalformedResponse(msg)

    def _remove(self, params: dict[str, str]) -> bool:
        for entry in self.entries:
            if (
                entry["NewRemoteHost"] == params["NewRemoteHost"]
                and entry["NewExternalPort"] == params["NewExternalPort"]
                and entry["NewProtocol"] == params["NewProtocol"]
            ):
                self.entries.remove(entry)
                return True
        return False


@pytest.fixture
def fake_device():
    return FakeDevice()


@pytest.fixture
def patch_device(monkeypatch, fake_device):
    """Make every Device the client builds resolve to ``fake_device``."""
    monkeypatch.setattr(
        "natupnp.client.Device", lambda location, http_timeout=10.0: fake_device
    )
    return fake_device


class FakeTransport:
    """Stand-in for an asyncio datagram transport."""

    def __init__(self, sock):
        self.sock = sock
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.closed = False

    def sendto(self, data: bytes, addr: tuple[str, int]) -> None:
        self.sent.append((data, addr))

    def close(self) -> None:
        self.closed = True

    def get_extra_info(self, name: str, default=None):
        return default


@pytest.fixture
def fake_udp(monkeypatch):
    """Replace SSDP sockets with in-memory transports.

    Returns the list of ``(transport, protocol)`` pairs created; tests feed
    replies through ``protocol.datagram_received``.
    """
    created: list[tuple[FakeTransport, Any]] = []

    async def fake_create_datagram_endpoint(self, protocol_factory, sock=None, **kwargs):
        protocol = protocol_factory()
        transport = FakeTransport(sock)
        created.append((transport, protocol))
        return transport, protocol

    monkeypatch.setattr(
        SsdpSearch, "_open_socket", staticmethod(lambda address: object())
    )
    monkeypatch.setattr(
        asyncio.BaseEventLoop,
        "create_datagram_endpoint",
        fake_create_datagram_endpoint,
    )
    return created


def ssdp_reply(
    location: str = GATEWAY_LOCATION, st: str = IGD_ST, usn: str = "uuid:gw-1"
) -> bytes:
    return (
        "HTTP/1.1 200 OK\r\n"
        "CACHE-CONTROL: max-age=120\r\n"
        f"ST: {st}\r\n"
        f"USN: {usn}::{st}\r\n"
        "EXT:\r\n"
        "SERVER: Linux/5.4 UPnP/1.1 MiniUPnPd/2.2\r\n"
        f"LOCATION: {location}\r\n"
        "\r\n"
    ).encode()


async def wait_for_endpoints(created: list, count: int = 1) -> None:
    for _ in range(100):
        if len(created) >= count:
            return
        await asyncio.sleep(0)
    msg = "SSDP search never opened its sockets"
    raise AssertionError(msg)
