"""CLI commands for syncing with the attendance server."""

from __future__ import annotations

import asyncio

import click

from rollcall.cli.helpers import open_client, output_error, output_result, output_options
from rollcall.cli.main import cli
from rollcall.sync.engine import SyncReport


def _report_message(report: SyncReport) -> str:
    drain = report.drain
    lines = [f"Sent {len(drain.committed)} mutation(s)"]
    if drain.retried:
        lines.append(f"  {len(drain.retried)} will be retried")
    for failure in drain.failed:
        lines.append(f"  failed: {failure['id']}: {failure['error']['message']}")
    if drain.paused_for_auth:
        lines.append("  paused: the server rejected the credential; run 'rollcall sync reauth'")
    if drain.aborted_offline:
        lines.append("  stopped: connection lost")
    if report.pull is not None:
        if report.pull.error:
            lines.append(f"Pull failed: {report.pull.error['message']}")
        else:
            lines.append(
                f"Pulled {report.pull.applied} change(s), {report.pull.deleted} deletion(s)"
            )
    return "\n".join(lines)


@cli.group()
def sync() -> None:
    """Synchronize the local cache with the server."""


@sync.command("run")
@output_options
def sync_run(output_json: bool, quiet: bool) -> None:
    """Send queued mutations and pull server changes once."""
    with open_client(output_json) as client:
        report = asyncio.run(client.sync_once())
        if report is None:
            output_error(
                f"Server unreachable at {client.config['api_url']}; mutations stay queued.",
                "OFFLINE",
                output_json,
            )

    output_result(
        data=report.to_dict(),
        human_message=_report_message(report),
        quiet_value=str(len(report.drain.committed)),
        is_json=output_json,
        is_quiet=quiet,
    )


@sync.command("watch")
@click.option("--interval", type=float, default=None, help="Seconds between connectivity probes.")
def sync_watch(interval: float | None) -> None:
    """Probe connectivity continuously and sync whenever the server comes back."""
    with open_client(False) as client:
        click.echo(f"rollcall sync: watching {client.config['api_url']} (Ctrl-C to stop)")
        try:
            asyncio.run(client.watch(probe_interval=interval))
        except KeyboardInterrupt:
            click.echo("\nrollcall sync: stopped.")


@sync.command("status")
@output_options
def sync_status(output_json: bool, quiet: bool) -> None:
    """Show sync state, queue depth and cache counts."""
    with open_client(output_json) as client:
        data = client.engine.status()
        data["client_id"] = client.config["client_id"]
        data["api_url"] = client.config["api_url"]

    if output_json:
        output_result(data=data, human_message="", quiet_value="", is_json=True, is_quiet=False)
        return

    queue = data["queue"]
    outstanding = queue["pending"] + queue["in_flight"] + queue["failed"]
    if quiet:
        click.echo(str(outstanding))
        return

    click.echo(f"Client: {data['client_id']}")
    click.echo(f"Server: {data['api_url']}")
    click.echo(f"Last sync: {data['last_sync_at'] or 'never'}")
    click.echo(
        f"Queue: {queue['pending']} pending, {queue['in_flight']} in flight, "
        f"{queue['failed']} failed"
    )
    click.echo(f"Cached: {data['people']} people, {data['attendance_sessions']} sessions")
    if data["needs_reauth"]:
        click.echo("Sync paused: re-authentication required ('rollcall sync reauth').")


@sync.command("reauth")
@output_options
def sync_reauth(output_json: bool, quiet: bool) -> None:
    """Resume syncing after the credential has been renewed."""
    with open_client(output_json) as client:
        was_paused = client.state.needs_reauth
        client.engine.credentials_renewed()

    output_result(
        data={"needs_reauth": False, "was_paused": was_paused},
        human_message="Sync resumed." if was_paused else "Sync was not paused.",
        quiet_value="ok",
        is_json=output_json,
        is_quiet=quiet,
    )
