"""Process-wide sync state shared by the connectivity monitor and the engine."""

from __future__ import annotations

from dataclasses import dataclass

from rollcall.storage.meta import SyncMetadata


@dataclass
class SyncState:
    """One instance per client context.

    Only the connectivity monitor writes ``online``; only the engine writes
    ``draining``, ``last_sync_at`` and ``needs_reauth``.  The last two are
    persisted through *meta*.
    """

    meta: SyncMetadata
    online: bool = False
    draining: bool = False

    @property
    def last_sync_at(self) -> str | None:
        return self.meta.last_sync_at

    @last_sync_at.setter
    def last_sync_at(self, value: str | None) -> None:
        self.meta.last_sync_at = value

    @property
    def needs_reauth(self) -> bool:
        return self.meta.needs_reauth

    @needs_reauth.setter
    def needs_reauth(self, value: bool) -> None:
        self.meta.needs_reauth = value

    def to_dict(self) -> dict:
        return {
            "online": self.online,
            "draining": self.draining,
            "last_sync_at": self.last_sync_at,
            "needs_reauth": self.needs_reauth,
        }
