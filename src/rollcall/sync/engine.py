"""Drain protocol, reconciliation pull, and the optimistic-write path.

The engine is the only writer of ``draining``, ``last_sync_at`` and
``needs_reauth``.  Every per-item failure is caught and classified here;
:meth:`SyncEngine.drain` and :meth:`SyncEngine.pull` always return a
summary instead of raising.

The cached ``sync_state`` of an entity mirrors the queue: Pending while the
entity has outstanding mutations, Conflict while one of them has failed
terminally, Clean otherwise.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace

from rollcall.core.conflicts import resolve
from rollcall.core.entities import (
    CachedEntity,
    EntityKind,
    ItemStatus,
    OpKind,
    QueueItem,
    SyncStatus,
    referenced_entity_keys,
    rewrite_references,
    utc_now,
    validate_attendance_payload,
    validate_person_payload,
)
from rollcall.core.errors import (
    AuthError,
    NetworkError,
    SyncError,
    UnknownEntityError,
)
from rollcall.core.ids import generate_local_entity_id, is_local_entity_id
from rollcall.storage.local_store import LocalStore
from rollcall.storage.meta import SyncMetadata
from rollcall.storage.queue import MutationQueue
from rollcall.sync.connectivity import ConnectivityEvent, ConnectivityMonitor
from rollcall.sync.remote import RemoteApi
from rollcall.sync.state import SyncState

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Exponential backoff with a cap and proportional random jitter."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.25

    @classmethod
    def from_config(cls, config: dict) -> RetryPolicy:
        retry = config.get("retry", {})
        return cls(
            max_attempts=int(retry.get("max_attempts", cls.max_attempts)),
            base_delay=float(retry.get("base_delay", cls.base_delay)),
            max_delay=float(retry.get("max_delay", cls.max_delay)),
            jitter=float(retry.get("jitter", cls.jitter)),
        )

    def delay(self, attempt: int, rng: random.Random) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        base = min(self.max_delay, self.base_delay * 2 ** max(attempt - 1, 0))
        return base + rng.uniform(0, self.jitter * base)


@dataclass
class DrainSummary:
    committed: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)
    aborted_offline: bool = False
    paused_for_auth: bool = False
    coalesced: bool = False

    def to_dict(self) -> dict:
        return {
            "committed": list(self.committed),
            "retried": list(self.retried),
            "failed": list(self.failed),
            "aborted_offline": self.aborted_offline,
            "paused_for_auth": self.paused_for_auth,
            "coalesced": self.coalesced,
        }


@dataclass
class PullSummary:
    applied: int = 0
    deleted: int = 0
    error: dict | None = None

    def to_dict(self) -> dict:
        return {"applied": self.applied, "deleted": self.deleted, "error": self.error}


@dataclass
class SyncReport:
    drain: DrainSummary
    pull: PullSummary | None

    def to_dict(self) -> dict:
        return {
            "drain": self.drain.to_dict(),
            "pull": self.pull.to_dict() if self.pull is not None else None,
        }


# Outcomes of processing one queue item.
_CONTINUE = "continue"
_STOP = "stop"


class SyncEngine:
    """Pushes queued mutations and pulls server changes."""

    def __init__(
        self,
        store: LocalStore,
        queue: MutationQueue,
        remote: RemoteApi,
        state: SyncState,
        *,
        retry: RetryPolicy | None = None,
        request_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.remote = remote
        self.state = state
        self.retry = retry or RetryPolicy()
        self.request_timeout = request_timeout
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._cancel = False
        self._rerun = False

    @property
    def meta(self) -> SyncMetadata:
        return self.state.meta

    # ------------------------------------------------------------------
    # Connectivity wiring
    # ------------------------------------------------------------------

    def attach(self, monitor: ConnectivityMonitor) -> None:
        """React to transitions: sync on reconnect, stop draining on loss."""
        monitor.subscribe(self._on_connectivity)

    def detach(self, monitor: ConnectivityMonitor) -> None:
        monitor.unsubscribe(self._on_connectivity)

    def _on_connectivity(self, event: ConnectivityEvent) -> Awaitable[SyncReport] | None:
        if event is ConnectivityEvent.BECAME_OFFLINE:
            self._cancel = True
            return None
        return self.sync()

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def sync(self) -> SyncReport:
        """Drain the queue, then pull server-side changes."""
        drain = await self.drain()
        if drain.coalesced or drain.paused_for_auth or not self.state.online:
            return SyncReport(drain=drain, pull=None)
        return SyncReport(drain=drain, pull=await self.pull())

    async def drain(self) -> DrainSummary:
        """Submit every ready item, oldest first, until none is left.

        Only one drain runs at a time.  A call made while a drain is running
        returns immediately with ``coalesced=True`` and makes the running
        drain do one more sweep.
        """
        if self.state.draining:
            self._rerun = True
            return DrainSummary(coalesced=True)

        self.state.draining = True
        summary = DrainSummary()
        try:
            while True:
                self._rerun = False
                self._cancel = False
                summary.aborted_offline = False
                await self._sweep(summary)
                if not (self._rerun and self.state.online and not self.state.needs_reauth):
                    break
            self._prune_id_map()
        finally:
            self.state.draining = False
        logger.debug(
            "drain finished: %d committed, %d retried, %d failed",
            len(summary.committed),
            len(summary.retried),
            len(summary.failed),
        )
        return summary

    async def _sweep(self, summary: DrainSummary) -> None:
        if self.state.needs_reauth:
            summary.paused_for_auth = True
            logger.info("drain paused: re-authentication required")
            return
        while True:
            if self._cancel or not self.state.online:
                summary.aborted_offline = self._has_pending()
                if summary.aborted_offline:
                    logger.info("drain stopped: offline")
                return
            item = self.queue.next_ready()
            if item is None:
                due = self.queue.earliest_due()
                if due is None:
                    return
                await self._sleep(max(0.0, due - self._clock()))
                continue
            if await self._process(item, summary) == _STOP:
                return

    def credentials_renewed(self) -> None:
        """Lift the re-authentication pause once a new credential is in place."""
        if self.state.needs_reauth:
            logger.info("credentials renewed; drain unpaused")
        self.state.needs_reauth = False

    def _has_pending(self) -> bool:
        return any(item.status is ItemStatus.PENDING for item in self.queue.items())

    async def _process(self, item: QueueItem, summary: DrainSummary) -> str:
        item = self._apply_id_map(item)

        if item.op is OpKind.DELETE and is_local_entity_id(item.entity_id):
            # The server never saw this entity; there is nothing to send.
            self.queue.mark_committed(item.id)
            self.store.delete(item.entity_kind, item.entity_id)
            summary.committed.append(item.id)
            return _CONTINUE

        self.queue.mark_in_flight(item.id)
        try:
            canonical = await asyncio.wait_for(
                self.remote.submit_mutation(item), timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            error: SyncError = NetworkError(f"timed out after {self.request_timeout}s")
        except SyncError as exc:
            error = exc
        except Exception as exc:
            logger.exception("unexpected failure submitting %s", item.id)
            error = NetworkError(f"unexpected failure: {exc}")
        else:
            self._apply_commit(item, canonical)
            self.queue.mark_committed(item.id)
            summary.committed.append(item.id)
            logger.debug("committed %s (%s %s)", item.id, item.op.value, canonical.id)
            return _CONTINUE

        return self._handle_failure(item, error, summary)

    def _handle_failure(self, item: QueueItem, error: SyncError, summary: DrainSummary) -> str:
        err = error.to_dict()

        if isinstance(error, AuthError):
            self.queue.release(item.id, err)
            self.state.needs_reauth = True
            summary.paused_for_auth = True
            logger.info("drain paused on %s: %s", item.id, error)
            return _STOP

        if error.retryable:
            if self._cancel or not self.state.online:
                self.queue.release(item.id, err)
                summary.aborted_offline = True
                logger.info("drain stopped on %s: offline", item.id)
                return _STOP
            if item.attempts + 1 >= self.retry.max_attempts:
                self._fail(item, err, summary)
                return _CONTINUE
            delay = self.retry.delay(item.attempts + 1, self._rng)
            self.queue.mark_retry(item.id, err, delay)
            if item.id not in summary.retried:
                summary.retried.append(item.id)
            logger.warning(
                "retrying %s in %.2fs (attempt %d): %s", item.id, delay, item.attempts + 1, error
            )
            return _CONTINUE

        self._fail(item, err, summary)
        return _CONTINUE

    def _fail(self, item: QueueItem, err: dict, summary: DrainSummary) -> None:
        self.queue.mark_failed(item.id, err)
        summary.failed.append({"id": item.id, "error": err})
        self._refresh_state(item.entity_kind, item.entity_id)
        logger.warning("mutation %s failed: %s", item.id, err["message"])

    # ------------------------------------------------------------------
    # Applying server results
    # ------------------------------------------------------------------

    def _apply_id_map(self, item: QueueItem) -> QueueItem:
        """Bring a queued item up to date with ids the server has assigned."""
        id_map = self.meta.id_map
        if not id_map:
            return item
        server_id = id_map.get(item.entity_id)
        if server_id is not None:
            self.queue.rewrite_entity_id(item.entity_kind, item.entity_id, server_id)
        if rewrite_references(item.payload, id_map) != item.payload:
            self.queue.rewrite_references(id_map)
        return self.queue.get(item.id) or item

    def _prune_id_map(self) -> None:
        """Forget provisional ids that no queued mutation refers to any more.

        Committed entities keep their provisional id as ``client_ref``, so
        lookups by that id still work through the cache.
        """
        id_map = self.meta.id_map
        if id_map:
            self.meta.forget_mappings(set(id_map) - self.queue.referenced_ids())

    def _adopt_server_id(self, kind: EntityKind, old_id: str, new_id: str) -> None:
        if old_id == new_id:
            return
        self.meta.record_mapping(old_id, new_id)
        self.queue.rewrite_entity_id(kind, old_id, new_id)
        self.queue.rewrite_references({old_id: new_id})

    def _apply_commit(self, item: QueueItem, canonical: CachedEntity) -> None:
        kind = item.entity_kind
        old_id = item.entity_id

        if canonical.deleted or item.op is OpKind.DELETE:
            self.store.delete(kind, old_id)
            if canonical.id != old_id:
                self.store.delete(kind, canonical.id)
            return

        self._adopt_server_id(kind, old_id, canonical.id)
        local = self.store.get(kind, old_id) or self.store.get(kind, canonical.id)
        remaining = [
            i for i in self.queue.outstanding_for(kind, canonical.id) if i.id != item.id
        ]

        if local is not None:
            if remaining:
                # Later edits were made on top of what was just acknowledged.
                local = replace(
                    local,
                    id=canonical.id,
                    version=canonical.version + 1,
                    sync_state=SyncStatus.PENDING,
                    pending_op=remaining[0].op,
                )
            else:
                local = local.with_state(SyncStatus.CLEAN)

        merged = resolve(local, canonical)
        if merged.client_ref is None and old_id != canonical.id:
            merged = replace(merged, client_ref=old_id)
        merged = _overlay(merged, remaining)
        self.store.rekey(kind, old_id, merged)

    def _refresh_state(self, kind: EntityKind, entity_id: str) -> None:
        entity = self.store.get(kind, entity_id)
        if entity is None:
            return
        updated = _overlay(entity, self.queue.outstanding_for(kind, entity_id))
        if updated != entity:
            self.store.put(updated)

    # ------------------------------------------------------------------
    # Reconciliation pull
    # ------------------------------------------------------------------

    async def pull(self) -> PullSummary:
        """Merge server-side changes made since the last pull."""
        summary = PullSummary()
        if not self.state.online:
            summary.error = NetworkError("offline").to_dict()
            return summary
        if self.state.needs_reauth:
            summary.error = AuthError("re-authentication required").to_dict()
            return summary

        try:
            changes = await asyncio.wait_for(
                self.remote.fetch_changes_since(self.state.last_sync_at),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            summary.error = NetworkError(f"timed out after {self.request_timeout}s").to_dict()
            return summary
        except SyncError as exc:
            if isinstance(exc, AuthError):
                self.state.needs_reauth = True
            summary.error = exc.to_dict()
            logger.warning("pull failed: %s", exc)
            return summary

        for remote_entity in changes:
            self._merge_remote(remote_entity, summary)

        # Only server stamps advance the cursor; the device clock may be skewed.
        stamps = [e.updated_at for e in changes if e.updated_at]
        if stamps:
            self.state.last_sync_at = max(stamps)
        return summary

    def _merge_remote(self, remote: CachedEntity, summary: PullSummary) -> None:
        kind = remote.kind
        local = self.store.get(kind, remote.id)
        if local is None and remote.client_ref:
            local = self.store.find_by_client_ref(kind, remote.client_ref)
            if local is not None and is_local_entity_id(local.id):
                self._adopt_server_id(kind, local.id, remote.id)
        old_id = local.id if local is not None else remote.id

        merged = resolve(local, remote)
        if merged.deleted:
            if local is not None:
                self.store.delete(kind, old_id)
                summary.deleted += 1
            return

        merged = _overlay(merged, self.queue.outstanding_for(kind, merged.id))
        self.store.rekey(kind, old_id, merged)
        summary.applied += 1

    # ------------------------------------------------------------------
    # Optimistic writes
    # ------------------------------------------------------------------

    def create_person(self, payload: dict) -> CachedEntity:
        validate_person_payload(payload)
        return self._record_create(EntityKind.PERSON, payload)

    def update_person(self, person_id: str, changes: dict) -> CachedEntity:
        validate_person_payload(changes, partial=True)
        entity = self._require_entity(EntityKind.PERSON, person_id)
        self.queue.enqueue(OpKind.UPDATE, EntityKind.PERSON, entity.id, changes)
        updated = replace(
            entity,
            payload={**entity.payload, **changes},
            version=entity.version + 1,
            updated_at=utc_now(),
        )
        return self._store_pending(updated)

    def delete_person(self, person_id: str) -> CachedEntity:
        return self._record_delete(EntityKind.PERSON, person_id)

    def record_attendance(self, payload: dict) -> CachedEntity:
        """Record an attendance session taken on this device.

        Person ids in ``records`` may be provisional; the session is held
        back until those people have been created on the server.
        """
        validate_attendance_payload(payload)
        records = [
            {**record, "person_id": self._require_entity(EntityKind.PERSON, record["person_id"]).id}
            for record in payload["records"]
        ]
        payload = {**payload, "records": records}
        return self._record_create(
            EntityKind.ATTENDANCE_SESSION,
            payload,
            depends_on=referenced_entity_keys(EntityKind.ATTENDANCE_SESSION, payload),
        )

    def delete_attendance(self, session_id: str) -> CachedEntity:
        return self._record_delete(EntityKind.ATTENDANCE_SESSION, session_id)

    def _record_create(
        self, kind: EntityKind, payload: dict, depends_on: list[str] | None = None
    ) -> CachedEntity:
        entity_id = generate_local_entity_id()
        self.queue.enqueue(OpKind.CREATE, kind, entity_id, payload, depends_on or ())
        entity = CachedEntity(
            id=entity_id,
            kind=kind,
            payload=dict(payload),
            version=0,
            sync_state=SyncStatus.PENDING,
            pending_op=OpKind.CREATE,
            client_ref=entity_id,
            updated_at=utc_now(),
        )
        self.store.put(entity)
        return entity

    def _record_delete(self, kind: EntityKind, entity_id: str) -> CachedEntity:
        entity = self._require_entity(kind, entity_id)
        self.queue.enqueue(OpKind.DELETE, kind, entity.id, {})
        tombstone = replace(
            entity, deleted=True, version=entity.version + 1, updated_at=utc_now()
        )
        return self._store_pending(tombstone)

    def _store_pending(self, entity: CachedEntity) -> CachedEntity:
        entity = _overlay(entity, self.queue.outstanding_for(entity.kind, entity.id))
        self.store.put(entity)
        return entity

    def _require_entity(self, kind: EntityKind, entity_id: str) -> CachedEntity:
        entity_id = self.meta.server_id_for(entity_id) or entity_id
        entity = self.store.find_by_client_ref(kind, entity_id)
        if entity is None or entity.deleted:
            raise UnknownEntityError(f"{kind.value} {entity_id} not found")
        return entity

    # ------------------------------------------------------------------
    # Failed item management
    # ------------------------------------------------------------------

    def retry_failed(self, item_id: str) -> QueueItem:
        """Give a failed mutation a fresh attempt budget."""
        item = self.queue.retry(item_id)
        self._refresh_state(item.entity_kind, item.entity_id)
        return item

    def discard_failed(self, item_id: str) -> QueueItem:
        """Drop a failed mutation and undo what it did to the cache.

        A discarded Create removes the local-only entity.  Anything else
        leaves the cached copy Clean so the next pull can overwrite it.
        """
        item = self.queue.discard(item_id)
        kind, entity_id = item.entity_kind, item.entity_id
        entity = self.store.get(kind, entity_id)
        remaining = self.queue.outstanding_for(kind, entity_id)
        if entity is None:
            return item
        if item.op is OpKind.CREATE and not remaining:
            self.store.delete(kind, entity_id)
        else:
            entity = replace(entity, deleted=False) if item.op is OpKind.DELETE else entity
            self.store.put(_overlay(entity, remaining))
        return item

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def entities(self, kind: EntityKind) -> list[CachedEntity]:
        """Cached entities of *kind*, hiding local deletions."""
        return [e for e in self.store.list(kind) if not e.deleted]

    def status(self) -> dict:
        return {
            **self.state.to_dict(),
            "queue": self.queue.counts(),
            "people": len(self.entities(EntityKind.PERSON)),
            "attendance_sessions": len(self.entities(EntityKind.ATTENDANCE_SESSION)),
        }


def _overlay(entity: CachedEntity, outstanding: list[QueueItem]) -> CachedEntity:
    """Set *entity*'s sync state from the queue items still targeting it."""
    if not outstanding:
        return entity.with_state(SyncStatus.CLEAN)
    if any(item.status is ItemStatus.FAILED for item in outstanding):
        return entity.with_state(SyncStatus.CONFLICT, outstanding[0].op)
    return entity.with_state(SyncStatus.PENDING, outstanding[0].op)
