"""Durable, ordered queue of not-yet-acknowledged mutations.

Items move through ``pending -> in_flight -> {committed | pending | failed}``.
Committed items are removed; failed items stay visible until the user
retries or discards them.

Ordering rules enforced by :meth:`MutationQueue.next_ready`:

* items are handed out oldest first (by enqueue sequence number);
* an item waits while any earlier item for the same entity is outstanding,
  failed ones included;
* an item waits while a Create for an entity listed in its ``depends_on``
  is outstanding.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from rollcall.core.entities import (
    EntityKind,
    ItemStatus,
    OpKind,
    QueueItem,
    entity_key,
    referenced_entity_keys,
    rewrite_references,
    utc_now,
)
from rollcall.core.errors import ImmutableEntityError, QueueItemNotFound
from rollcall.core.ids import generate_mutation_id
from rollcall.storage.namespace import TypedNamespace

logger = logging.getLogger(__name__)


def coalesce_ops(existing: OpKind, incoming: OpKind) -> OpKind:
    """Return the op a pending item takes when *incoming* is merged into it.

    Create+Update stays a Create; anything followed by Delete becomes a
    Delete.  Nothing may follow a Delete.
    """
    if incoming is OpKind.DELETE:
        return OpKind.DELETE
    if existing is OpKind.DELETE:
        raise ValueError("entity is already scheduled for deletion")
    if incoming is OpKind.CREATE:
        raise ValueError("entity already has a pending mutation; cannot create it again")
    return existing


class MutationQueue:
    """Durable FIFO of :class:`QueueItem` records with per-entity coalescing."""

    def __init__(self, directory: Path, *, clock: Callable[[], float] = time.time) -> None:
        self._ns: TypedNamespace[QueueItem] = TypedNamespace(
            directory, QueueItem.from_dict, QueueItem.to_dict
        )
        self._clock = clock
        self._next_seq = max((item.seq for item in self._ns.values()), default=0) + 1

        # Nothing counts as acknowledged unless it was explicitly committed.
        for item in self._ns.values():
            if item.status is ItemStatus.IN_FLIGHT:
                item.status = ItemStatus.PENDING
                self._ns.put(item.id, item)
                logger.info("recovered interrupted item %s", item.id)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        op: OpKind,
        kind: EntityKind,
        entity_id: str,
        payload: dict,
        depends_on: Iterable[str] = (),
    ) -> QueueItem:
        """Add a mutation, or merge it into the entity's unsent pending item.

        Returns the stored item, which keeps its original id when merged.

        Raises:
            ImmutableEntityError: For an Update to an attendance session that
                cannot be folded into the session's unsent Create.
            ValueError: For an op that cannot follow the entity's pending op.
        """
        deps = [key for key in depends_on if key != entity_key(kind, entity_id)]
        tail = self._tail_for(entity_key(kind, entity_id))

        if tail is not None and tail.status is ItemStatus.PENDING and not tail.submitted:
            merged_op = coalesce_ops(tail.op, op)
            if op is OpKind.UPDATE:
                tail.payload = {**tail.payload, **payload}
            elif op is OpKind.DELETE:
                tail.payload = dict(payload)
            tail.op = merged_op
            tail.depends_on = [] if merged_op is OpKind.DELETE else _union(tail.depends_on, deps)
            self._ns.put(tail.id, tail)
            logger.debug("coalesced %s into %s (%s)", op.value, tail.id, merged_op.value)
            return tail

        if op is OpKind.UPDATE and kind is EntityKind.ATTENDANCE_SESSION:
            raise ImmutableEntityError(f"attendance session {entity_id} cannot be updated")
        if tail is not None and tail.op is OpKind.DELETE:
            raise ValueError("entity is already scheduled for deletion")

        item = QueueItem(
            id=generate_mutation_id(),
            op=op,
            entity_kind=kind,
            entity_id=entity_id,
            payload=dict(payload),
            enqueued_at=utc_now(),
            seq=self._next_seq,
            depends_on=deps,
        )
        self._next_seq += 1
        self._ns.put(item.id, item)
        logger.debug("enqueued %s %s %s as %s", op.value, kind.value, entity_id, item.id)
        return item

    # ------------------------------------------------------------------
    # Drain-side transitions
    # ------------------------------------------------------------------

    def next_ready(self, now: float | None = None) -> QueueItem | None:
        """Return the oldest item that may be submitted right now."""
        now = self._clock() if now is None else now
        ordered = self.items()
        first_seq: dict[str, int] = {}
        open_creates: set[str] = set()
        for item in ordered:
            first_seq.setdefault(item.entity_key, item.seq)
            if item.op is OpKind.CREATE:
                open_creates.add(item.entity_key)

        for item in ordered:
            if item.status is not ItemStatus.PENDING or item.not_before > now:
                continue
            if first_seq[item.entity_key] != item.seq:
                continue
            if any(dep in open_creates for dep in item.depends_on):
                continue
            return item
        return None

    def earliest_due(self, now: float | None = None) -> float | None:
        """Return when the next backed-off item becomes due, if any."""
        now = self._clock() if now is None else now
        due = [
            item.not_before
            for item in self._ns.values()
            if item.status is ItemStatus.PENDING and item.not_before > now
        ]
        return min(due) if due else None

    def mark_in_flight(self, item_id: str) -> QueueItem:
        item = self._require(item_id)
        item.status = ItemStatus.IN_FLIGHT
        item.submitted = True
        self._ns.put(item_id, item)
        return item

    def mark_committed(self, item_id: str) -> None:
        """Remove an item the server has acknowledged."""
        self._require(item_id)
        self._ns.delete(item_id)

    def mark_retry(self, item_id: str, error: dict, delay: float) -> QueueItem:
        """Count a failed attempt and make the item ready again after *delay*."""
        item = self._require(item_id)
        item.attempts += 1
        item.last_error = error
        item.status = ItemStatus.PENDING
        item.not_before = self._clock() + delay
        self._ns.put(item_id, item)
        return item

    def mark_failed(self, item_id: str, error: dict) -> QueueItem:
        """Count a failed attempt and park the item until a manual retry."""
        item = self._require(item_id)
        item.attempts += 1
        item.last_error = error
        item.status = ItemStatus.FAILED
        self._ns.put(item_id, item)
        return item

    def release(self, item_id: str, error: dict | None = None) -> QueueItem:
        """Return an in-flight item to pending without counting an attempt."""
        item = self._require(item_id)
        item.status = ItemStatus.PENDING
        if error is not None:
            item.last_error = error
        self._ns.put(item_id, item)
        return item

    # ------------------------------------------------------------------
    # User-facing management
    # ------------------------------------------------------------------

    def retry(self, item_id: str) -> QueueItem:
        """Put a failed item back in line with a fresh attempt budget."""
        item = self._require(item_id)
        if item.status is not ItemStatus.FAILED:
            raise ValueError(f"item {item_id} is {item.status.value}, not failed")
        item.status = ItemStatus.PENDING
        item.attempts = 0
        item.not_before = 0.0
        self._ns.put(item_id, item)
        return item

    def discard(self, item_id: str) -> QueueItem:
        """Drop a failed item for good and return it."""
        item = self._require(item_id)
        if item.status is not ItemStatus.FAILED:
            raise ValueError(f"item {item_id} is {item.status.value}, not failed")
        self._ns.delete(item_id)
        return item

    def get(self, item_id: str) -> QueueItem | None:
        return self._ns.get(item_id)

    def items(self) -> list[QueueItem]:
        """Return every item, oldest first."""
        return sorted(self._ns.values(), key=lambda item: item.seq)

    def outstanding_for(self, kind: EntityKind, entity_id: str) -> list[QueueItem]:
        key = entity_key(kind, entity_id)
        return [item for item in self.items() if item.entity_key == key]

    def counts(self) -> dict[str, int]:
        result = {status.value: 0 for status in ItemStatus}
        for item in self._ns.values():
            result[item.status.value] += 1
        return result

    def __len__(self) -> int:
        return len(self._ns)

    # ------------------------------------------------------------------
    # Server id propagation
    # ------------------------------------------------------------------

    def rewrite_entity_id(self, kind: EntityKind, old_id: str, new_id: str) -> int:
        """Point every item targeting ``kind:old_id`` at ``new_id``."""
        changed = 0
        for item in self.outstanding_for(kind, old_id):
            item.entity_id = new_id
            self._ns.put(item.id, item)
            changed += 1
        return changed

    def referenced_ids(self) -> set[str]:
        """Entity ids that some queued item targets, depends on, or mentions."""
        ids: set[str] = set()
        for item in self._ns.values():
            ids.add(item.entity_id)
            keys = [*item.depends_on, *referenced_entity_keys(item.entity_kind, item.payload)]
            ids.update(key.split(":", 1)[1] for key in keys)
        return ids

    def rewrite_references(self, id_map: dict[str, str]) -> int:
        """Replace provisional ids inside payloads and dependency lists."""
        key_map = {
            entity_key(kind, old): entity_key(kind, new)
            for old, new in id_map.items()
            for kind in EntityKind
        }
        changed = 0
        for item in self._ns.values():
            payload = rewrite_references(item.payload, id_map)
            depends_on = [key_map.get(key, key) for key in item.depends_on]
            if payload != item.payload or depends_on != item.depends_on:
                item.payload = payload
                item.depends_on = depends_on
                self._ns.put(item.id, item)
                changed += 1
        return changed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, item_id: str) -> QueueItem:
        item = self._ns.get(item_id)
        if item is None:
            raise QueueItemNotFound(item_id)
        return item

    def _tail_for(self, key: str) -> QueueItem | None:
        tail = None
        for item in self.items():
            if item.entity_key == key:
                tail = item
        return tail


def _union(existing: list[str], extra: list[str]) -> list[str]:
    result = list(existing)
    for key in extra:
        if key not in result:
            result.append(key)
    return result
