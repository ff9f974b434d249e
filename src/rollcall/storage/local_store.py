"""Durable cache of people and attendance sessions."""

from __future__ import annotations

from pathlib import Path

from rollcall.core.entities import CachedEntity, EntityKind, entity_key
from rollcall.storage.namespace import TypedNamespace


class LocalStore:
    """Keyed entity cache that survives process restarts.

    Every write reaches disk before the call returns.  No network access
    happens here.
    """

    def __init__(self, directory: Path) -> None:
        self._ns: TypedNamespace[CachedEntity] = TypedNamespace(
            directory, CachedEntity.from_dict, CachedEntity.to_dict
        )

    def get(self, kind: EntityKind, entity_id: str) -> CachedEntity | None:
        return self._ns.get(entity_key(kind, entity_id))

    def put(self, entity: CachedEntity) -> None:
        """Insert or replace *entity*.  Repeating the call is harmless."""
        self._ns.put(entity.key, entity)

    def delete(self, kind: EntityKind, entity_id: str) -> bool:
        return self._ns.delete(entity_key(kind, entity_id))

    def list(self, kind: EntityKind) -> list[CachedEntity]:
        """Return a snapshot of every cached entity of *kind*."""
        return [e for e in self._ns.values() if e.kind is kind]

    def rekey(self, kind: EntityKind, old_id: str, entity: CachedEntity) -> None:
        """Store *entity* under its (new) id and drop the record at *old_id*.

        The new record is written first, so a crash in between leaves a
        duplicate rather than losing the entity.
        """
        self.put(entity)
        if old_id != entity.id:
            self.delete(kind, old_id)

    def find_by_client_ref(self, kind: EntityKind, client_ref: str) -> CachedEntity | None:
        """Return the entity created locally under *client_ref*, if cached."""
        direct = self.get(kind, client_ref)
        if direct is not None:
            return direct
        for entity in self.list(kind):
            if entity.client_ref == client_ref:
                return entity
        return None
