"""Queue commands: inspect, retry and discard queued mutations."""

from __future__ import annotations

import click

from rollcall.cli.helpers import open_client, output_result, output_options, queue_line
from rollcall.cli.main import cli
from rollcall.core.entities import ItemStatus


@cli.group()
def queue() -> None:
    """Inspect the outgoing mutation queue."""


@queue.command("list")
@click.option("--failed", "failed_only", is_flag=True, help="Only show failed mutations.")
@output_options
def queue_list(failed_only: bool, output_json: bool, quiet: bool) -> None:
    """List queued mutations in submission order."""
    with open_client(output_json) as client:
        items = client.queue.items()

    if failed_only:
        items = [i for i in items if i.status is ItemStatus.FAILED]

    if output_json:
        output_result(
            data=[i.to_dict() for i in items],
            human_message="",
            quiet_value="",
            is_json=True,
            is_quiet=False,
        )
        return
    if quiet:
        for item in items:
            click.echo(item.id)
        return
    if not items:
        click.echo("Queue is empty.")
        return
    for item in items:
        click.echo(queue_line(item))


@queue.command("retry")
@click.argument("item_id")
@output_options
def queue_retry(item_id: str, output_json: bool, quiet: bool) -> None:
    """Give a failed mutation another set of attempts."""
    with open_client(output_json) as client:
        item = client.engine.retry_failed(item_id)

    output_result(
        data=item.to_dict(),
        human_message=f"Requeued {item.id}; it will be sent on the next sync",
        quiet_value=item.id,
        is_json=output_json,
        is_quiet=quiet,
    )


@queue.command("discard")
@click.argument("item_id")
@output_options
def queue_discard(item_id: str, output_json: bool, quiet: bool) -> None:
    """Drop a failed mutation and revert its local effect."""
    with open_client(output_json) as client:
        item = client.engine.discard_failed(item_id)

    output_result(
        data=item.to_dict(),
        human_message=f"Discarded {item.id} ({item.op.value} {item.entity_id})",
        quiet_value=item.id,
        is_json=output_json,
        is_quiet=quiet,
    )
