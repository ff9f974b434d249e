"""Cached entities, queue items, and payload validation.

Records cross the persistence boundary as plain dicts.  ``from_dict``
validates the stored shape instead of trusting it, raising ``ValueError``
for anything malformed.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from rollcall.core.errors import ValidationError


class EntityKind(str, Enum):
    PERSON = "person"
    ATTENDANCE_SESSION = "attendance_session"


class SyncStatus(str, Enum):
    CLEAN = "clean"
    PENDING = "pending"
    CONFLICT = "conflict"


class OpKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ItemStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"


def utc_now() -> str:
    """Return the current UTC time as an ISO 8601 string with microseconds."""
    return format_timestamp(datetime.now(timezone.utc).timestamp())


def format_timestamp(epoch: float) -> str:
    """Format a POSIX timestamp as ``YYYY-MM-DDTHH:MM:SS.ffffffZ``.

    The fixed width keeps these strings ordered the same way lexically and
    chronologically.
    """
    return datetime.fromtimestamp(epoch, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def entity_key(kind: EntityKind, entity_id: str) -> str:
    """Return the ``kind:id`` key identifying an entity across namespaces."""
    return f"{kind.value}:{entity_id}"


def _require(data: dict, name: str, types: type | tuple[type, ...]) -> object:
    if name not in data:
        raise ValueError(f"missing field '{name}'")
    value = data[name]
    if not isinstance(value, types):
        raise ValueError(f"field '{name}' has unexpected type {type(value).__name__}")
    return value


@dataclass
class CachedEntity:
    """A person or attendance session as held in the local cache."""

    id: str
    kind: EntityKind
    payload: dict
    version: int = 0
    sync_state: SyncStatus = SyncStatus.CLEAN
    pending_op: OpKind | None = None
    client_ref: str | None = None
    deleted: bool = False
    updated_at: str | None = None

    @property
    def key(self) -> str:
        return entity_key(self.kind, self.id)

    def with_state(
        self, sync_state: SyncStatus, pending_op: OpKind | None = None
    ) -> CachedEntity:
        return replace(self, sync_state=sync_state, pending_op=pending_op)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payload": self.payload,
            "version": self.version,
            "sync_state": self.sync_state.value,
            "pending_op": self.pending_op.value if self.pending_op else None,
            "client_ref": self.client_ref,
            "deleted": self.deleted,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CachedEntity:
        """Build an entity from stored or server-provided data.

        Server responses omit the client-only fields, which then take their
        defaults (a canonical entity is always Clean).
        """
        if not isinstance(data, dict):
            raise ValueError("entity record must be an object")
        pending_op = data.get("pending_op")
        version = _require(data, "version", int) if "version" in data else 0
        if isinstance(version, bool):
            raise ValueError("field 'version' has unexpected type bool")
        return cls(
            id=str(_require(data, "id", str)),
            kind=EntityKind(_require(data, "kind", str)),
            payload=dict(_require(data, "payload", dict)),
            version=int(version),
            sync_state=SyncStatus(data.get("sync_state", SyncStatus.CLEAN.value)),
            pending_op=OpKind(pending_op) if pending_op else None,
            client_ref=data.get("client_ref"),
            deleted=bool(data.get("deleted", False)),
            updated_at=data.get("updated_at"),
        )


@dataclass
class QueueItem:
    """A write operation waiting for server acknowledgement."""

    id: str
    op: OpKind
    entity_kind: EntityKind
    entity_id: str
    payload: dict
    enqueued_at: str
    seq: int
    attempts: int = 0
    last_error: dict | None = None
    status: ItemStatus = ItemStatus.PENDING
    not_before: float = 0.0
    submitted: bool = False
    depends_on: list[str] = field(default_factory=list)

    @property
    def entity_key(self) -> str:
        return entity_key(self.entity_kind, self.entity_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "op": self.op.value,
            "entity_kind": self.entity_kind.value,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at,
            "seq": self.seq,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "status": self.status.value,
            "not_before": self.not_before,
            "submitted": self.submitted,
            "depends_on": list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, data: dict) -> QueueItem:
        if not isinstance(data, dict):
            raise ValueError("queue record must be an object")
        depends_on = data.get("depends_on", [])
        if not isinstance(depends_on, list):
            raise ValueError("field 'depends_on' must be a list")
        return cls(
            id=str(_require(data, "id", str)),
            op=OpKind(_require(data, "op", str)),
            entity_kind=EntityKind(_require(data, "entity_kind", str)),
            entity_id=str(_require(data, "entity_id", str)),
            payload=dict(_require(data, "payload", dict)),
            enqueued_at=str(_require(data, "enqueued_at", str)),
            seq=int(_require(data, "seq", int)),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            status=ItemStatus(data.get("status", ItemStatus.PENDING.value)),
            not_before=float(data.get("not_before", 0.0)),
            submitted=bool(data.get("submitted", False)),
            depends_on=[str(k) for k in depends_on],
        )


# ---------------------------------------------------------------------------
# Payload validation
# ---------------------------------------------------------------------------

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}(:\d{2})?$")


def validate_person_payload(payload: dict, *, partial: bool = False) -> None:
    """Check a person payload.  ``partial`` allows an update subset."""
    if not isinstance(payload, dict):
        raise ValidationError("person payload must be an object")
    if not partial or "name" in payload:
        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("person name is required")
    descriptor = payload.get("descriptor")
    if descriptor is not None and not isinstance(descriptor, list):
        raise ValidationError("person descriptor must be a list of numbers")
    photo = payload.get("photo")
    if photo is not None and not isinstance(photo, str):
        raise ValidationError("person photo must be a base64 string")


def validate_attendance_payload(payload: dict) -> None:
    """Check an attendance session payload."""
    if not isinstance(payload, dict):
        raise ValidationError("attendance payload must be an object")
    if not _DATE_RE.match(str(payload.get("date", ""))):
        raise ValidationError("attendance date must be YYYY-MM-DD")
    if not _TIME_RE.match(str(payload.get("time", ""))):
        raise ValidationError("attendance time must be HH:MM or HH:MM:SS")
    for counter in ("detected", "recognized"):
        value = payload.get(counter, 0)
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValidationError(f"attendance '{counter}' must be a non-negative integer")
    records = payload.get("records")
    if not isinstance(records, list):
        raise ValidationError("attendance records must be a list")
    for record in records:
        if not isinstance(record, dict) or not isinstance(record.get("person_id"), str):
            raise ValidationError("each attendance record needs a person_id")
        confidence = record.get("confidence", 0.0)
        if not isinstance(confidence, (int, float)) or not 0.0 <= confidence <= 1.0:
            raise ValidationError("attendance confidence must be between 0 and 1")
        if not isinstance(record.get("present", True), bool):
            raise ValidationError("attendance 'present' must be true or false")


def referenced_entity_keys(kind: EntityKind, payload: dict) -> list[str]:
    """Return keys of the entities a payload points at."""
    if kind is not EntityKind.ATTENDANCE_SESSION:
        return []
    keys: list[str] = []
    for record in payload.get("records", []):
        key = entity_key(EntityKind.PERSON, record["person_id"])
        if key not in keys:
            keys.append(key)
    return keys


def rewrite_references(value: object, id_map: dict[str, str]) -> object:
    """Return a copy of *value* with every string found in *id_map* replaced."""
    if isinstance(value, str):
        return id_map.get(value, value)
    if isinstance(value, dict):
        return {k: rewrite_references(v, id_map) for k, v in value.items()}
    if isinstance(value, list):
        return [rewrite_references(v, id_map) for v in value]
    return copy.deepcopy(value)
