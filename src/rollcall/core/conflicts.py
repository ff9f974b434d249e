"""Precedence policy between a cached entity and the server's version of it.

Pure functions only: no I/O, no clock, same answer on every invocation.
"""

from __future__ import annotations

from dataclasses import replace

from rollcall.core.entities import CachedEntity, OpKind, SyncStatus


def resolve(local: CachedEntity | None, remote: CachedEntity) -> CachedEntity:
    """Decide which version of an entity the local cache should hold.

    Rules, first match wins:

    1. No local copy, or the local copy is Clean: the server is
       authoritative for anything not locally pending.
    2. The local copy carries an unacknowledged Create: keep the user's
       data and graft the server-assigned id onto it.  The result stays
       Pending.
    3. Competing updates: the larger ``version`` wins.  Exact ties go to
       the lexically larger entity id; identical ids go to the server.

    The result is Clean except under rule 2.
    """
    if local is None or local.sync_state is SyncStatus.CLEAN:
        return _clean(remote)

    if local.sync_state is SyncStatus.PENDING and local.pending_op is OpKind.CREATE:
        return replace(
            local,
            id=remote.id,
            client_ref=local.client_ref or local.id,
            sync_state=SyncStatus.PENDING,
            pending_op=OpKind.CREATE,
        )

    return _clean(_newer(local, remote))


def _newer(local: CachedEntity, remote: CachedEntity) -> CachedEntity:
    if local.version != remote.version:
        return local if local.version > remote.version else remote
    if local.id != remote.id:
        return local if local.id > remote.id else remote
    return remote


def _clean(entity: CachedEntity) -> CachedEntity:
    return replace(entity, sync_state=SyncStatus.CLEAN, pending_op=None)
