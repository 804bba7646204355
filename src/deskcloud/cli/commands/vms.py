"""deskcloud vms — show the state of every VM in the cloud."""

from __future__ import annotations

import click
import httpx

from deskcloud.cli.config import get_url


@click.command()
def vms() -> None:
    """List VMs and whether they are provisioned."""
    url = get_url()

    try:
        r = httpx.get(f"{url}/api/vms", timeout=30)
        r.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise click.ClickException(f"{e.response.status_code}: {e.response.text}")
    except httpx.HTTPError as e:
        raise click.ClickException(str(e))

    status = r.json()
    limit = status["max_concurrent_vms"]
    if limit is None:
        limit = "unlimited"
    click.echo(f"Cloud {status['name']}: {status['provisioned']} provisioned (limit {limit})")
    click.echo(f"{'VMID':<30} {'LABELS':<20} {'STATE':<10} {'AGENT':<30}")
    click.echo("-" * 92)
    for vm in status["vms"]:
        state = "in use" if vm["provisioned"] else "free"
        click.echo(
            f"{vm['vmid']:<30} {vm['labels']:<20} {state:<10} {vm['agent_name'] or '':<30}"
        )
