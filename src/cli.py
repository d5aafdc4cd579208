#!/usr/bin/env python3
"""
CLI for the Volume Unregister Operator
Runs the operator or the webhook and inspects CnsUnregisterVolume requests
"""

import asyncio
import json
import sys

import click
import yaml
from kubernetes.config.config_exception import ConfigException
from tabulate import tabulate

from config import get_config
from kube import ApiError, KubeApiClient
from main import Application, main, setup_logging


@click.group()
def cli():
    """Volume Unregister Operator - unregister volumes without deleting disks"""
    pass


@cli.command()
@click.option("--workers", "-w", type=int, help="Maximum concurrent reconciles")
@click.option("--resync-interval", type=int, help="Seconds between full resyncs")
@click.option("--webhook/--no-webhook", default=None, help="Serve admission webhook")
@click.option("--log-level", default=None, help="Logging level (e.g. DEBUG)")
def run(workers, resync_interval, webhook, log_level):
    """Run the controller (and optionally the admission webhook)"""
    config = get_config()
    if workers is not None:
        if workers <= 0:
            raise click.BadParameter("must be positive", param_hint="--workers")
        config.controller.max_concurrent_reconciles = workers
    if resync_interval is not None:
        config.controller.resync_interval = resync_interval
    if webhook is not None:
        config.webhook.enabled = webhook

    setup_logging(log_level or config.log_level)
    asyncio.run(main(Application(config=config)))


@cli.command()
@click.option("--port", "-p", type=int, help="Port to listen on")
@click.option("--cert-file", type=click.Path(exists=True), help="TLS certificate")
@click.option("--key-file", type=click.Path(exists=True), help="TLS private key")
@click.option("--log-level", default=None, help="Logging level (e.g. DEBUG)")
def webhook(port, cert_file, key_file, log_level):
    """Run only the admission webhook server"""
    config = get_config()
    config.webhook.enabled = True
    if port is not None:
        config.webhook.port = port
    if cert_file:
        config.webhook.cert_file = cert_file
    if key_file:
        config.webhook.key_file = key_file

    setup_logging(log_level or config.log_level)
    asyncio.run(main(Application(config=config, run_controller=False)))


async def _fetch_requests():
    client = KubeApiClient.from_config(get_config().kubernetes)
    try:
        return await client.list_unregister_requests()
    finally:
        await client.close()


@cli.command(name="list")
@click.option("--namespace", "-n", default=None, help="Only show this namespace")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
def list_requests(namespace, output):
    """List CnsUnregisterVolume requests and their status"""
    try:
        requests = asyncio.run(_fetch_requests())
    except (ApiError, ConfigException) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if namespace:
        requests = [r for r in requests if r.namespace == namespace]

    if output == "json":
        click.echo(json.dumps([r.to_dict() for r in requests], indent=2))
        return
    if output == "yaml":
        click.echo(yaml.dump([r.to_dict() for r in requests], default_flow_style=False))
        return

    if not requests:
        click.echo("No CnsUnregisterVolume requests found")
        return

    headers = ["Namespace", "Name", "PVC", "Unregistered", "Error"]
    rows = [
        [r.namespace, r.name, r.pvc_name, r.unregistered, r.error or "-"]
        for r in requests
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


if __name__ == "__main__":
    cli()
