#!/usr/bin/env python3
"""
CLI tool for driftsync
Shows sync status, errors, conflicts and inventory of a reconciler
"""

import json
import os
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("DRIFTSYNC_API", "http://localhost:8000/api/v1")


class SyncCLI:
    """CLI client for the driftsync status API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, timeout=30, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except ValueError:
                    click.echo(f"Response: {e.response.text}", err=True)
            return None


def _dump(result, output):
    if output == "yaml":
        click.echo(yaml.safe_dump(result, default_flow_style=False, sort_keys=False))
    else:
        click.echo(json.dumps(result, indent=2))


@click.group()
@click.option("--api", "api_url", default=API_BASE_URL, help="Status API base URL")
@click.pass_context
def cli(ctx, api_url):
    """driftsync CLI - inspect and nudge a GitOps reconciler"""
    ctx.obj = SyncCLI(api_url)


@cli.command()
@click.option("--output", "-o", type=click.Choice(["summary", "json", "yaml"]), default="summary")
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, output, follow, interval):
    """Show sync status of the reconciler"""

    def show_status():
        result = client._make_request("GET", "/status")
        if not result:
            return
        if output != "summary":
            _dump(result, output)
            return
        if follow:
            click.clear()
        click.echo(f"Scope: {result['scope']}")
        click.echo(f"Revision: {result['revision'] or 'N/A'}")
        click.echo(f"Syncing: {'yes' if result['syncing'] else 'no'}")
        click.echo(f"Last Sync: {result.get('last_sync_time') or 'Never'}")
        click.echo(f"Managed Objects: {result['inventory_size']}")
        click.echo(f"Drift Corrections: {result['drift_corrections']}")

        operations = result.get("operations") or {}
        if operations:
            rows = [
                [kind, c["created"], c["updated"], c["deleted"], c["unmanaged"]]
                for kind, c in operations.items()
            ]
            click.echo("")
            click.echo(
                tabulate(
                    rows,
                    headers=["Kind", "Created", "Updated", "Deleted", "Unmanaged"],
                    tablefmt="grid",
                )
            )

        if result["errors"] or result["conflicts"]:
            click.echo(
                f"\n✗ {len(result['errors'])} errors, "
                f"{len(result['conflicts'])} conflicts"
            )
        else:
            click.echo("\n✓ Synced")

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


@cli.command()
@click.pass_obj
def errors(client):
    """List errors from the last sync"""
    result = client._make_request("GET", "/status")
    if not result:
        return
    entries = result["errors"] + result.get("remediation_errors", [])
    if not entries:
        click.echo("No errors")
        return
    rows = [
        [e["code"], e["message"], "\n".join(e["resources"])] for e in entries
    ]
    click.echo(tabulate(rows, headers=["Code", "Message", "Resources"], tablefmt="grid"))


@cli.command()
@click.pass_obj
def conflicts(client):
    """List objects managed by another reconciler"""
    result = client._make_request("GET", "/status")
    if not result:
        return
    if not result["conflicts"]:
        click.echo("No conflicts")
        return
    rows = [[c["resource"], c["current_owner"], c["claimant"]] for c in result["conflicts"]]
    click.echo(tabulate(rows, headers=["Resource", "Managed By", "Declared By"], tablefmt="grid"))


@cli.command()
@click.option("--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table")
@click.pass_obj
def inventory(client, output):
    """List the objects the reconciler owns"""
    result = client._make_request("GET", "/inventory")
    if not result:
        return
    if output != "table":
        _dump(result, output)
        return
    rows = [
        [r["group"] or "core", r["version"], r["kind"], r["namespace"], r["name"]]
        for r in result["resources"]
    ]
    click.echo(f"Inventory: {result['namespace']}/{result['name']}")
    click.echo(
        tabulate(rows, headers=["Group", "Version", "Kind", "Namespace", "Name"], tablefmt="grid")
    )


@cli.command()
@click.pass_obj
def sync(client):
    """Trigger a sync cycle now"""
    result = client._make_request("POST", "/sync")
    if result:
        click.echo("Sync triggered successfully")


@cli.command()
@click.option("--type", "event_type", default=None, help="Only show this event type")
@click.option("--kind", default=None, help="Only show events for this kind")
@click.pass_obj
def events(client, event_type, kind):
    """Stream sync events"""
    params = {k: v for k, v in (("event_type", event_type), ("kind", kind)) if v}
    try:
        with requests.get(
            f"{client.base_url}/events", params=params, stream=True, timeout=None
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith("data: "):
                    continue
                event = json.loads(line[len("data: "):])
                click.echo(
                    f"{event['timestamp']}  {event['event_type']:<16} "
                    f"{event['resource'] or event['scope']}  {event['message']}"
                )
    except requests.exceptions.RequestException as e:
        click.echo(f"Error: {e}", err=True)
    except KeyboardInterrupt:
        click.echo("\nStopped following")


if __name__ == "__main__":
    cli()
