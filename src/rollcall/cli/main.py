"""CLI entry point and commands."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from rollcall.core.config import default_config, validate_config
from rollcall.storage.fs import ROLLCALL_DIR


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log sync activity to stderr.")
def cli(verbose: bool) -> None:
    """rollcall: offline-first attendance recording for classroom devices."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )


@cli.command()
@click.option(
    "--path",
    "target_path",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Directory to initialize rollcall in (defaults to current directory).",
)
@click.option("--api-url", default=None, help="Base URL of the attendance server API.")
def init(target_path: str, api_url: str | None) -> None:
    """Initialize a device state directory."""
    from rollcall.client import init_state_dir, read_config

    root = Path(target_path)
    state_dir = root / ROLLCALL_DIR

    if state_dir.is_dir():
        click.echo(f"rollcall already initialized in {ROLLCALL_DIR}/")
        return

    if state_dir.exists():
        raise click.ClickException(
            f"Cannot initialize: '{ROLLCALL_DIR}' exists but is not a directory. "
            "Remove it and try again."
        )

    if api_url is not None:
        problems = validate_config({**default_config(), "api_url": api_url})
        if problems:
            raise click.ClickException(problems[0])

    init_state_dir(root, api_url=api_url)
    config = read_config(state_dir)
    click.echo(f"Initialized rollcall in {ROLLCALL_DIR}/ (client {config['client_id']})")


# ---------------------------------------------------------------------------
# Register command modules (must be after cli group is defined)
# ---------------------------------------------------------------------------
from rollcall.cli import people_cmds as _people_cmds  # noqa: E402, F401
from rollcall.cli import attendance_cmds as _attendance_cmds  # noqa: E402, F401
from rollcall.cli import queue_cmds as _queue_cmds  # noqa: E402, F401
from rollcall.cli import sync_cmds as _sync_cmds  # noqa: E402, F401

if __name__ == "__main__":
    cli()
