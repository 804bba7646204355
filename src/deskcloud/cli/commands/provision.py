"""deskcloud provision — request agents for a label."""

from __future__ import annotations

import click
import httpx

from deskcloud.cli.config import get_url


@click.command()
@click.argument("label")
@click.option("--count", "-n", default=1, type=int, help="Number of executors wanted")
def provision(label: str, count: int) -> None:
    """Provision up to COUNT agents whose VMs match LABEL."""
    url = get_url()

    try:
        r = httpx.post(
            f"{url}/api/provision",
            json={"label": label, "excess_workload": count},
            timeout=600,
        )
        r.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise click.ClickException(f"{e.response.status_code}: {e.response.text}")
    except httpx.HTTPError as e:
        raise click.ClickException(str(e))

    planned = r.json()["planned"]
    if not planned:
        click.echo("No agents provisioned.")
        return
    for p in planned:
        click.echo(f"{p['name']}  (vm {p['vmid']})")
