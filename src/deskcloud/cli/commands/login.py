"""deskcloud login — remember the server URL."""

from __future__ import annotations

import click

from deskcloud.cli.config import load_config, save_config


@click.command()
@click.option("--url", required=True, help="Deskcloud server URL")
def login(url: str) -> None:
    """Save the server URL to ~/.deskcloud/config.toml."""
    cfg = load_config()
    cfg["url"] = url.rstrip("/")
    save_config(cfg)
    click.echo(f"Using server {cfg['url']}")
