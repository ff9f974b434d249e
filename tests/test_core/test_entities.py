"""Tests for entity and queue item records and payload validation."""

from __future__ import annotations

import pytest

from rollcall.core.entities import (
    CachedEntity,
    EntityKind,
    ItemStatus,
    OpKind,
    QueueItem,
    SyncStatus,
    entity_key,
    format_timestamp,
    referenced_entity_keys,
    rewrite_references,
    utc_now,
    validate_attendance_payload,
    validate_person_payload,
)
from rollcall.core.errors import ValidationError


def _session(**overrides) -> dict:
    payload = {
        "date": "2024-03-01",
        "time": "09:00",
        "detected": 2,
        "recognized": 1,
        "records": [{"person_id": "per_1", "confidence": 0.93, "present": True}],
    }
    payload.update(overrides)
    return payload


class TestTimestamps:
    def test_format_is_fixed_width(self) -> None:
        assert format_timestamp(0) == "1970-01-01T00:00:00.000000Z"
        assert len(utc_now()) == len("1970-01-01T00:00:00.000000Z")

    def test_lexical_order_matches_time_order(self) -> None:
        assert format_timestamp(9.5) < format_timestamp(10.0) < format_timestamp(100.0)


class TestCachedEntity:
    def test_key(self) -> None:
        entity = CachedEntity(id="per_1", kind=EntityKind.PERSON, payload={})
        assert entity.key == "person:per_1" == entity_key(EntityKind.PERSON, "per_1")

    def test_round_trip(self) -> None:
        entity = CachedEntity(
            id="loc_x",
            kind=EntityKind.PERSON,
            payload={"name": "Ana"},
            version=2,
            sync_state=SyncStatus.PENDING,
            pending_op=OpKind.CREATE,
            client_ref="loc_x",
            updated_at="2024-01-01T00:00:00.000000Z",
        )
        assert CachedEntity.from_dict(entity.to_dict()) == entity

    def test_server_shape_defaults_to_clean(self) -> None:
        entity = CachedEntity.from_dict(
            {"id": "per_1", "kind": "person", "payload": {"name": "Ana"}, "version": 3}
        )
        assert entity.sync_state is SyncStatus.CLEAN
        assert entity.pending_op is None
        assert entity.deleted is False

    def test_missing_version_defaults_to_zero(self) -> None:
        entity = CachedEntity.from_dict({"id": "per_1", "kind": "person", "payload": {}})
        assert entity.version == 0

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {"kind": "person", "payload": {}},
            {"id": "x", "kind": "robot", "payload": {}},
            {"id": "x", "kind": "person", "payload": []},
            {"id": "x", "kind": "person", "payload": {}, "version": "1"},
            {"id": "x", "kind": "person", "payload": {}, "version": True},
        ],
    )
    def test_rejects_malformed(self, data) -> None:
        with pytest.raises(ValueError):
            CachedEntity.from_dict(data)

    def test_with_state(self) -> None:
        entity = CachedEntity(id="a", kind=EntityKind.PERSON, payload={})
        pending = entity.with_state(SyncStatus.PENDING, OpKind.UPDATE)
        assert pending.pending_op is OpKind.UPDATE
        assert entity.sync_state is SyncStatus.CLEAN


class TestQueueItem:
    def test_round_trip(self) -> None:
        item = QueueItem(
            id="mut_1",
            op=OpKind.CREATE,
            entity_kind=EntityKind.ATTENDANCE_SESSION,
            entity_id="loc_1",
            payload=_session(),
            enqueued_at=utc_now(),
            seq=4,
            attempts=1,
            last_error={"code": "NETWORK_ERROR", "message": "x"},
            status=ItemStatus.FAILED,
            not_before=12.5,
            submitted=True,
            depends_on=["person:loc_2"],
        )
        assert QueueItem.from_dict(item.to_dict()) == item
        assert item.entity_key == "attendance_session:loc_1"

    def test_rejects_bad_depends_on(self) -> None:
        data = {
            "id": "mut_1",
            "op": "create",
            "entity_kind": "person",
            "entity_id": "loc_1",
            "payload": {},
            "enqueued_at": utc_now(),
            "seq": 1,
            "depends_on": "person:x",
        }
        with pytest.raises(ValueError, match="depends_on"):
            QueueItem.from_dict(data)

    def test_rejects_unknown_status(self) -> None:
        data = {
            "id": "mut_1",
            "op": "create",
            "entity_kind": "person",
            "entity_id": "loc_1",
            "payload": {},
            "enqueued_at": utc_now(),
            "seq": 1,
            "status": "committed",
        }
        with pytest.raises(ValueError):
            QueueItem.from_dict(data)


class TestValidatePerson:
    def test_minimal(self) -> None:
        validate_person_payload({"name": "Ana"})

    def test_full(self) -> None:
        validate_person_payload({"name": "Ana", "descriptor": [0.1, 0.2], "photo": "aGk="})

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"name": "   "},
            {"name": "Ana", "descriptor": "0.1,0.2"},
            {"name": "Ana", "photo": b"raw"},
            "Ana",
        ],
    )
    def test_rejects(self, payload) -> None:
        with pytest.raises(ValidationError):
            validate_person_payload(payload)

    def test_partial_allows_missing_name(self) -> None:
        validate_person_payload({"photo": "aGk="}, partial=True)

    def test_partial_still_checks_name_when_given(self) -> None:
        with pytest.raises(ValidationError, match="name"):
            validate_person_payload({"name": ""}, partial=True)


class TestValidateAttendance:
    def test_valid(self) -> None:
        validate_attendance_payload(_session())
        validate_attendance_payload(_session(time="09:00:30", records=[]))

    @pytest.mark.parametrize(
        ("overrides", "match"),
        [
            ({"date": "01/03/2024"}, "date"),
            ({"time": "9am"}, "time"),
            ({"detected": -1}, "detected"),
            ({"recognized": 1.5}, "recognized"),
            ({"records": None}, "records"),
            ({"records": [{"confidence": 0.5}]}, "person_id"),
            ({"records": [{"person_id": "p", "confidence": 1.2}]}, "confidence"),
            ({"records": [{"person_id": "p", "present": "yes"}]}, "present"),
        ],
    )
    def test_rejects(self, overrides, match) -> None:
        with pytest.raises(ValidationError, match=match):
            validate_attendance_payload(_session(**overrides))


class TestReferences:
    def test_session_references_people(self) -> None:
        payload = _session(
            records=[
                {"person_id": "loc_a", "confidence": 0.9},
                {"person_id": "per_b", "confidence": 0.8},
                {"person_id": "loc_a", "confidence": 0.7},
            ]
        )
        keys = referenced_entity_keys(EntityKind.ATTENDANCE_SESSION, payload)
        assert keys == ["person:loc_a", "person:per_b"]

    def test_person_references_nothing(self) -> None:
        assert referenced_entity_keys(EntityKind.PERSON, {"name": "Ana"}) == []

    def test_rewrite_references_is_a_copy(self) -> None:
        payload = _session(records=[{"person_id": "loc_a", "confidence": 0.9}])
        rewritten = rewrite_references(payload, {"loc_a": "per_7"})
        assert rewritten["records"][0]["person_id"] == "per_7"
        assert payload["records"][0]["person_id"] == "loc_a"
