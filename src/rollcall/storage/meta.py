"""Sync metadata: last pull time, re-authentication flag, id mappings."""

from __future__ import annotations

from pathlib import Path

from rollcall.storage.namespace import JsonNamespace

_STATE_KEY = "state"
_ID_MAP_KEY = "id_map"


class SyncMetadata:
    """Small durable record of engine-owned sync bookkeeping."""

    def __init__(self, directory: Path) -> None:
        self._ns = JsonNamespace(directory)
        state = self._ns.get(_STATE_KEY) or {}
        last = state.get("last_sync_at")
        self._last_sync_at: str | None = last if isinstance(last, str) else None
        self._needs_reauth = bool(state.get("needs_reauth", False))
        id_map = self._ns.get(_ID_MAP_KEY) or {}
        self._id_map: dict[str, str] = {
            str(k): str(v) for k, v in id_map.items() if isinstance(v, str)
        }

    @property
    def last_sync_at(self) -> str | None:
        return self._last_sync_at

    @last_sync_at.setter
    def last_sync_at(self, value: str | None) -> None:
        self._last_sync_at = value
        self._save_state()

    @property
    def needs_reauth(self) -> bool:
        return self._needs_reauth

    @needs_reauth.setter
    def needs_reauth(self, value: bool) -> None:
        if value != self._needs_reauth:
            self._needs_reauth = value
            self._save_state()

    def _save_state(self) -> None:
        self._ns.put(
            _STATE_KEY,
            {"last_sync_at": self._last_sync_at, "needs_reauth": self._needs_reauth},
        )

    @property
    def id_map(self) -> dict[str, str]:
        """Provisional (client-minted) id -> server-assigned id."""
        return dict(self._id_map)

    def record_mapping(self, local_id: str, server_id: str) -> None:
        if local_id == server_id or self._id_map.get(local_id) == server_id:
            return
        self._id_map[local_id] = server_id
        self._ns.put(_ID_MAP_KEY, dict(self._id_map))

    def forget_mappings(self, local_ids: set[str]) -> None:
        """Drop the mappings for *local_ids*, persisting once."""
        stale = self._id_map.keys() & local_ids
        if not stale:
            return
        for local_id in stale:
            del self._id_map[local_id]
        self._ns.put(_ID_MAP_KEY, dict(self._id_map))

    def server_id_for(self, local_id: str) -> str | None:
        return self._id_map.get(local_id)
