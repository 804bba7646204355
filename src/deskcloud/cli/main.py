"""Deskcloud CLI — run the server and talk to it."""

from __future__ import annotations

import click

from deskcloud.cli.commands.login import login
from deskcloud.cli.commands.provision import provision
from deskcloud.cli.commands.vms import vms
from deskcloud.config import DeskcloudConfig


@click.group()
def cli() -> None:
    """Deskcloud — ephemeral build agents on Parallels Desktop VMs."""
    pass


# Register subcommands
cli.add_command(login)
cli.add_command(provision)
cli.add_command(vms)


@cli.command()
@click.option("--host", default=lambda: DeskcloudConfig.from_env().host, help="Bind host [env: DESKCLOUD_HOST]")
@click.option("--port", default=lambda: DeskcloudConfig.from_env().port, type=int, help="Bind port [env: DESKCLOUD_PORT]")
def serve(host: str, port: int) -> None:
    """Start the Deskcloud server."""
    import asyncio

    from deskcloud.server import start_server

    asyncio.run(start_server(host=host, port=port))
