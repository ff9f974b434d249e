"""Person commands: enroll, edit, remove, list."""

from __future__ import annotations

import json

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


def _parse_descriptor(raw: str | None, is_json: bool) -> list | None:
    """Accept a descriptor as a JSON array or a comma-separated list of numbers."""
    if raw is None:
        return None
    try:
        if raw.lstrip().startswith("["):
            values = json.loads(raw)
        else:
            values = [float(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        output_error("Descriptor must be a list of numbers.", "INVALID_REQUEST", is_json)
    if not isinstance(values, list) or not all(
        isinstance(v, (int, float)) and not isinstance(v, bool) for v in values
    ):
        output_error("Descriptor must be a list of numbers.", "INVALID_REQUEST", is_json)
    return values


@cli.group()
def person() -> None:
    """Enroll and manage people."""


@person.command("add")
@click.argument("name")
@click.option("--descriptor", default=None, help="Face descriptor (JSON array or comma-separated).")
@click.option("--photo", default=None, help="Base64-encoded photo.")
@output_options
def person_add(
    name: str, descriptor: str | None, photo: str | None, output_json: bool, quiet: bool
) -> None:
    """Enroll a person.  Works offline; the record syncs later."""
    payload: dict = {"name": name}
    values = _parse_descriptor(descriptor, output_json)
    if values is not None:
        payload["descriptor"] = values
    if photo is not None:
        payload["photo"] = photo

    with open_client(output_json) as client:
        entity = client.engine.create_person(payload)

    output_result(
        data=entity.to_dict(),
        human_message=f"Enrolled {name} as {entity.id} (pending sync)",
        quiet_value=entity.id,
        is_json=output_json,
        is_quiet=quiet,
    )


@person.command("edit")
@click.argument("person_id")
@click.option("--name", default=None, help="New name.")
@click.option("--descriptor", default=None, help="New face descriptor.")
@click.option("--photo", default=None, help="New base64-encoded photo.")
@output_options
def person_edit(
    person_id: str,
    name: str | None,
    descriptor: str | None,
    photo: str | None,
    output_json: bool,
    quiet: bool,
) -> None:
    """Change a person's fields."""
    changes: dict = {}
    if name is not None:
        changes["name"] = name
    values = _parse_descriptor(descriptor, output_json)
    if values is not None:
        changes["descriptor"] = values
    if photo is not None:
        changes["photo"] = photo
    if not changes:
        output_error(
            "Nothing to change. Pass --name, --descriptor or --photo.",
            "INVALID_REQUEST",
            output_json,
        )

    with open_client(output_json) as client:
        entity = client.engine.update_person(person_id, changes)

    output_result(
        data=entity.to_dict(),
        human_message=f"Updated {entity.id} (pending sync)",
        quiet_value=entity.id,
        is_json=output_json,
        is_quiet=quiet,
    )


@person.command("remove")
@click.argument("person_id")
@output_options
def person_remove(person_id: str, output_json: bool, quiet: bool) -> None:
    """Remove a person."""
    with open_client(output_json) as client:
        entity = client.engine.delete_person(person_id)

    output_result(
        data=entity.to_dict(),
        human_message=f"Removed {entity.id} (pending sync)",
        quiet_value=entity.id,
        is_json=output_json,
        is_quiet=quiet,
    )


@person.command("list")
@output_options
def person_list(output_json: bool, quiet: bool) -> None:
    """List enrolled people from the local cache."""
    with open_client(output_json) as client:
        people = client.engine.entities(EntityKind.PERSON)

    people.sort(key=lambda e: (str(e.payload.get("name", "")).lower(), e.id))
    if output_json:
        output_result(
            data=[e.to_dict() for e in people],
            human_message="",
            quiet_value="",
            is_json=True,
            is_quiet=False,
        )
        return
    if quiet:
        for entity in people:
            click.echo(entity.id)
        return
    if not people:
        click.echo("No people enrolled.")
        return
    for entity in people:
        click.echo(entity_line(entity, str(entity.payload.get("name", ""))))
