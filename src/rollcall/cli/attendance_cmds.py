"""Attendance commands: record, list, remove."""

from __future__ import annotations

import click

from rollcall.cli.helpers import (
    entity_line,
    open_client,
    output_error,
    output_options,
    output_result,
)
from rollcall.cli.main import cli
from rollcall.core.entities import EntityKind


def _parse_present(raw: str, is_json: bool) -> dict:
    """Parse ``ID`` or ``ID:CONFIDENCE`` into an attendance record."""
    person_id, sep, confidence = raw.rpartition(":")
    if not sep:
        return {"person_id": raw, "confidence": 1.0, "present": True}
    try:
        value = float(confidence)
    except ValueError:
        output_error(f"Invalid confidence in '{raw}'.", "INVALID_REQUEST", is_json)
    return {"person_id": person_id, "confidence": value, "present": True}


@cli.group()
def attendance() -> None:
    """Record and review attendance sessions."""


@attendance.command("record")
@click.option("--date", "date_", required=True, help="Session date (YYYY-MM-DD).")
@click.option("--time", "time_", required=True, help="Session time (HH:MM[:SS]).")
@click.option(
    "--present",
    multiple=True,
    help="Recognized person, as ID or ID:CONFIDENCE.  Repeatable.",
)
@click.option("--absent", multiple=True, help="Person marked absent.  Repeatable.")
@click.option(
    "--detected", type=int, default=None, help="Faces detected (defaults to --present count)."
)
@click.option(
    "--recognized", type=int, default=None, help="Faces recognized (defaults to --present count)."
)
@output_options
def attendance_record(
    date_: str,
    time_: str,
    present: tuple[str, ...],
    absent: tuple[str, ...],
    detected: int | None,
    recognized: int | None,
    output_json: bool,
    quiet: bool,
) -> None:
    """Record an attendance session.  Sessions are immutable once synced."""
    records = [_parse_present(raw, output_json) for raw in present]
    records += [
        {"person_id": person_id, "confidence": 0.0, "present": False} for person_id in absent
    ]
    payload = {
        "date": date_,
        "time": time_,
        "detected": len(present) if detected is None else detected,
        "recognized": len(present) if recognized is None else recognized,
        "records": records,
    }

    with open_client(output_json) as client:
        entity = client.engine.record_attendance(payload)

    output_result(
        data=entity.to_dict(),
        human_message=(
            f"Recorded session {entity.id} on {date_} {time_} "
            f"({len(present)} present, {len(absent)} absent; pending sync)"
        ),
        quiet_value=entity.id,
        is_json=output_json,
        is_quiet=quiet,
    )


@attendance.command("list")
@click.option("--date", "date_", default=None, help="Only sessions on this date.")
@output_options
def attendance_list(date_: str | None, output_json: bool, quiet: bool) -> None:
    """List attendance sessions from the local cache, newest first."""
    with open_client(output_json) as client:
        sessions = client.engine.entities(EntityKind.ATTENDANCE_SESSION)

    if date_ is not None:
        sessions = [s for s in sessions if s.payload.get("date") == date_]
    sessions.sort(
        key=lambda s: (str(s.payload.get("date", "")), str(s.payload.get("time", ""))),
        reverse=True,
    )

    if output_json:
        output_result(
            data=[s.to_dict() for s in sessions],
            human_message="",
            quiet_value="",
            is_json=True,
            is_quiet=False,
        )
        return
    if quiet:
        for session in sessions:
            click.echo(session.id)
        return
    if not sessions:
        click.echo("No attendance sessions.")
        return
    for session in sessions:
        p = session.payload
        label = (
            f"{p.get('date')} {p.get('time')}  "
            f"{p.get('recognized', 0)}/{p.get('detected', 0)} recognized, "
            f"{len(p.get('records', []))} records"
        )
        click.echo(entity_line(session, label))


@attendance.command("remove")
@click.argument("session_id")
@output_options
def attendance_remove(session_id: str, output_json: bool, quiet: bool) -> None:
    """Delete an attendance session."""
    with open_client(output_json) as client:
        entity = client.engine.delete_attendance(session_id)

    output_result(
        data=entity.to_dict(),
        human_message=f"Removed session {entity.id} (pending sync)",
        quiet_value=entity.id,
        is_json=output_json,
        is_quiet=quiet,
    )
