"""Tests for the natupnp command line interface (natupnp/cli.py)."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from conftest import GATEWAY_LOCATION, LOCAL_ADDRESS
from natupnp.cli import cli
from natupnp.exceptions import DiscoveryTimeout

pytestmark = [pytest.mark.unit, pytest.mark.cli]

BYPASS_ARGS = ["--url", GATEWAY_LOCATION, "--address", LOCAL_ADDRESS]
WIDE = {"COLUMNS": "200"}


class TestCLI:
    """Tests for natupnp commands against an in-memory gateway."""

    def test_ip(self, patch_device):
        runner = CliRunner()

        result = runner.invoke(cli, [*BYPASS_ARGS, "ip"])

        assert result.exit_code == 0, result.output
        assert result.output.strip() == "203.0.113.5"

    def test_discover_bypass(self, patch_device):
        runner = CliRunner()

        result = runner.invoke(cli, [*BYPASS_ARGS, "discover"])

        assert result.exit_code == 0, result.output
        assert GATEWAY_LOCATION in result.output
        assert LOCAL_ADDRESS in result.output

    def test_map_list_unmap(self, patch_device):
        runner = CliRunner()

        result = runner.invoke(
            cli, [*BYPASS_ARGS, "map", "31234", "7654", "--ttl", "0", "--protocol", "udp"]
        )
        assert result.exit_code == 0, result.output
        assert "Mapped UDP 31234 -> 7654" in result.output

        result = runner.invoke(cli, [*BYPASS_ARGS, "list", "--local"], env=WIDE)
        assert result.exit_code == 0, result.output
        assert "31234" in result.output
        assert "Permanent" in result.output

        result = runner.invoke(cli, [*BYPASS_ARGS, "unmap", "31234", "--protocol", "udp"])
        assert result.exit_code == 0, result.output
        assert patch_device.entries == []

        result = runner.invoke(cli, [*BYPASS_ARGS, "list"])
        assert "No port mappings" in result.output

    def test_list_regex_filter(self, patch_device):
        patch_device.add_entry(NewExternalPort=1000, NewPortMappingDescription="web-80")
        patch_device.add_entry(NewExternalPort=1001, NewPortMappingDescription="ssh")
        runner = CliRunner()

        result = runner.invoke(
            cli, [*BYPASS_ARGS, "list", "--description", r"^web-\d+", "--regex"], env=WIDE
        )

        assert result.exit_code == 0, result.output
        assert "1000" in result.output
        assert "1001" not in result.output

    def test_list_invalid_regex(self, patch_device):
        runner = CliRunner()

        result = runner.invoke(cli, [*BYPASS_ARGS, "list", "--description", "(", "--regex"])

        assert result.exit_code != 0
        assert patch_device.calls == []

    def test_url_without_address(self):
        runner = CliRunner()

        result = runner.invoke(cli, ["--url", GATEWAY_LOCATION, "ip"])

        assert result.exit_code == 1
        assert "local address is required" in result.output

    def test_env_vars(self, patch_device):
        runner = CliRunner()

        result = runner.invoke(
            cli,
            ["ip"],
            env={"NATUPNP_URL": GATEWAY_LOCATION, "NATUPNP_ADDRESS": LOCAL_ADDRESS},
        )

        assert result.exit_code == 0, result.output
        assert "203.0.113.5" in result.output

    def test_library_error_becomes_click_error(self, monkeypatch):
        async def no_gateway(self, refresh=False):
            msg = "Connection timed out while searching for the gateway."
            raise DiscoveryTimeout(msg)

        monkeypatch.setattr("natupnp.client.Client.get_gateway", no_gateway)
        runner = CliRunner()

        result = runner.invoke(cli, ["--timeout", "10", "ip"])

        assert result.exit_code == 1
        assert "timed out" in result.output
