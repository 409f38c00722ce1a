"""Command line interface for nat-upnp."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from natupnp.client import Client
from natupnp.exceptions import NATUPnPError
from natupnp.logging_config import get_logger, setup_logging
from natupnp.models import DEFAULT_DESCRIPTION, DEFAULT_TIMEOUT_MS, DEFAULT_TTL

T = TypeVar("T")

logger = get_logger("cli")


def _make_client(ctx: click.Context) -> Client:
    try:
        return Client(**ctx.obj["config"])
    except NATUPnPError as e:
        raise click.ClickException(str(e)) from e


def _run(ctx: click.Context, func: Callable[[Client], Awaitable[T]]) -> T:
    """Run ``func`` against a fresh client and close it afterwards."""
    client = _make_client(ctx)

    async def _main() -> T:
        async with client:
            return await func(client)

    try:
        return asyncio.run(_main())
    except NATUPnPError as e:
        logger.debug("Command failed", exc_info=True)
        raise click.ClickException(str(e)) from e


@click.group()
@click.option(
    "--url",
    envvar="NATUPNP_URL",
    default=None,
    help="Gateway device description URL (skips SSDP discovery)",
)
@click.option(
    "--address",
    envvar="NATUPNP_ADDRESS",
    default=None,
    help="Local interface address, required with --url",
)
@click.option(
    "--timeout",
    envvar="NATUPNP_TIMEOUT",
    type=click.IntRange(min=1),
    default=DEFAULT_TIMEOUT_MS,
    show_default=True,
    help="Discovery timeout in milliseconds",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity")
@click.option("--json-logs", is_flag=True, help="Emit structured JSON logs")
@click.pass_context
def cli(
    ctx: click.Context,
    url: str | None,
    address: str | None,
    timeout: int,
    verbose: int,
    json_logs: bool,
) -> None:
    """Discover a UPnP gateway and manage its port mappings."""
    level = "DEBUG" if verbose > 1 else "INFO" if verbose else "WARNING"
    setup_logging(level, structured=json_logs)
    ctx.ensure_object(dict)
    ctx.obj["config"] = {"url": url, "address": address, "timeout": timeout}


@cli.command("discover")
@click.pass_context
def discover(ctx: click.Context) -> None:
    """Find the gateway and show how it is reached."""
    console = Console()
    gateway = _run(ctx, lambda client: client.get_gateway())
    console.print(f"[green]Gateway:[/green] {gateway.gateway.description}")
    console.print(f"[green]Local address:[/green] {gateway.address}")


@cli.command("ip")
@click.pass_context
def public_ip(ctx: click.Context) -> None:
    """Print the gateway's public IP address."""
    click.echo(_run(ctx, lambda client: client.get_public_ip()))


@cli.command("list")
@click.option("--local", is_flag=True, help="Only mappings pointing at this host")
@click.option("--description", default=None, help="Filter by description")
@click.option("--regex", is_flag=True, help="Treat --description as a regular expression")
@click.pass_context
def list_mappings(
    ctx: click.Context, local: bool, description: str | None, regex: bool
) -> None:
    """List the gateway's port mappings."""
    console = Console()
    pattern: Any = description
    if description is not None and regex:
        try:
            pattern = re.compile(description)
        except re.error as e:
            raise click.BadParameter(str(e), param_hint="--description") from e

    mappings = _run(
        ctx, lambda client: client.get_mappings(local=local, description=pattern)
    )
    if not mappings:
        console.print("[dim]No port mappings[/dim]")
        return

    table = Table()
    table.add_column("Protocol", style="cyan")
    table.add_column("Public", style="yellow")
    table.add_column("Private", style="magenta")
    table.add_column("Enabled")
    table.add_column("TTL", style="blue")
    table.add_column("Description", style="green")
    for mapping in mappings:
        public = f"{mapping.public.host or '*'}:{mapping.public.port}"
        private = f"{mapping.private.host}:{mapping.private.port}"
        if mapping.local:
            private += " (local)"
        table.add_row(
            mapping.protocol.upper(),
            public,
            private,
            "yes" if mapping.enabled else "no",
            str(mapping.ttl) if mapping.ttl else "Permanent",
            mapping.description,
        )
    console.print(table)


@cli.command("map")
@click.argument("public", type=click.IntRange(1, 65535))
@click.argument("private", type=click.IntRange(1, 65535), required=False)
@click.option(
    "--protocol",
    type=click.Choice(["tcp", "udp"], case_sensitive=False),
    default="tcp",
    help="Protocol (tcp or udp)",
)
@click.option("--description", default=DEFAULT_DESCRIPTION, show_default=True)
@click.option(
    "--ttl",
    type=click.IntRange(min=0),
    default=DEFAULT_TTL,
    show_default=True,
    help="Lease duration in seconds (0 for no expiry)",
)
@click.pass_context
def map_port(
    ctx: click.Context,
    public: int,
    private: int | None,
    protocol: str,
    description: str,
    ttl: int,
) -> None:
    """Map PUBLIC gateway port to PRIVATE port on this host."""
    console = Console()
    _run(
        ctx,
        lambda client: client.create_mapping(
            public=public,
            private=private,
            protocol=protocol,
            description=description,
            ttl=ttl,
        ),
    )
    console.print(
        f"[green]Mapped {protocol.upper()} {public} -> {private or public}[/green]"
    )


@cli.command("unmap")
@click.argument("public", type=click.IntRange(1, 65535))
@click.option(
    "--protocol",
    type=click.Choice(["tcp", "udp"], case_sensitive=False),
    default="tcp",
    help="Protocol (tcp or udp)",
)
@click.pass_context
def unmap_port(ctx: click.Context, public: int, protocol: str) -> None:
    """Remove the mapping for PUBLIC gateway port."""
    console = Console()
    _run(ctx, lambda client: client.remove_mapping(public=public, protocol=protocol))
    console.print(f"[green]Removed {protocol.upper()} mapping for {public}[/green]")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
