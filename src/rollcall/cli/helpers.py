"""Shared CLI helpers and output utilities."""

from __future__ import annotations

import contextlib
import json
from collections.abc import Generator
from pathlib import Path
from typing import NoReturn

import click

from rollcall.client import RollcallClient
from rollcall.core.entities import CachedEntity, ItemStatus, QueueItem
from rollcall.core.errors import QueueItemNotFound, StorageError, SyncError, error_from_dict
from rollcall.storage.fs import ROLLCALL_DIR, RollcallRootError, find_root
from rollcall.storage.locks import LockTimeout


# ---------------------------------------------------------------------------
# Root & client
# ---------------------------------------------------------------------------


def require_state_dir(is_json: bool = False) -> Path:
    """Find .rollcall/ directory or exit with error."""
    try:
        root = find_root()
    except RollcallRootError as e:
        output_error(str(e), "NOT_INITIALIZED", is_json)
    if root is None:
        output_error(
            "Not a rollcall device (no .rollcall/ found). Run 'rollcall init' first.",
            "NOT_INITIALIZED",
            is_json,
        )
    return root / ROLLCALL_DIR


@contextlib.contextmanager
def open_client(is_json: bool) -> Generator[RollcallClient, None, None]:
    """Open the device's client context, translating failures into CLI errors."""
    state_dir = require_state_dir(is_json)
    try:
        client = RollcallClient(state_dir)
    except LockTimeout:
        output_error(
            "Another rollcall process is using this device's state directory.",
            "STATE_BUSY",
            is_json,
        )
    except StorageError as e:
        output_error(str(e), "STORAGE_ERROR", is_json)
    try:
        yield client
    except SyncError as e:
        output_error(str(e), e.code, is_json)
    except QueueItemNotFound as e:
        output_error(f"Queue item {e.args[0]} not found.", "NOT_FOUND", is_json)
    except (KeyError, ValueError) as e:
        message = e.args[0] if e.args else str(e)
        output_error(str(message), "INVALID_REQUEST", is_json)
    finally:
        client.close()


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def json_envelope(ok: bool, *, data: object = None, error: object = None) -> str:
    """Build a structured JSON output envelope."""
    result: dict = {"ok": ok}
    if data is not None:
        result["data"] = data
    if error is not None:
        result["error"] = error
    return json.dumps(result, sort_keys=True, indent=2) + "\n"


def json_error_obj(code: str, message: str) -> dict:
    """Build an error object for the JSON envelope."""
    return {"code": code, "message": message}


def output_error(message: str, code: str, is_json: bool, exit_code: int = 1) -> NoReturn:
    """Print error and exit. JSON errors go to stdout; human errors to stderr."""
    if is_json:
        click.echo(json_envelope(False, error=json_error_obj(code, message)))
    else:
        click.echo(f"Error: {message}", err=True)
    raise SystemExit(exit_code)


def output_result(
    *,
    data: object,
    human_message: str,
    quiet_value: str,
    is_json: bool,
    is_quiet: bool,
) -> None:
    """Print success result in the appropriate format."""
    if is_json:
        click.echo(json_envelope(True, data=data))
    elif is_quiet:
        click.echo(quiet_value)
    else:
        click.echo(human_message)


def output_options(f):  # noqa: ANN001, ANN201
    """Decorator adding ``--json`` and ``--quiet`` to a command."""
    f = click.option("--quiet", is_flag=True, help="Print only the primary ID.")(f)
    f = click.option("--json", "output_json", is_flag=True, help="Output structured JSON.")(f)
    return f


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def entity_line(entity: CachedEntity, label: str) -> str:
    """One-line human rendering of a cached entity."""
    marker = "" if entity.sync_state.value == "clean" else f" [{entity.sync_state.value}]"
    return f"{entity.id}  {label}{marker}"


def queue_line(item: QueueItem) -> str:
    """One-line human rendering of a queue item."""
    line = (
        f"{item.id}  {item.op.value:<6s} {item.entity_kind.value:<18s} "
        f"{item.entity_id}  {item.status.value}"
    )
    if item.attempts:
        line += f" (attempts: {item.attempts})"
    if item.last_error:
        error = error_from_dict(item.last_error)
        line += f"  last error: {error}"
        if item.status is ItemStatus.FAILED:
            line += " (gave up after retries)" if error.retryable else " (rejected by server)"
    return line
