"""The client context: one object wiring stores, monitor, remote and engine.

Nothing in the package reaches for module-level state; everything a
component needs is handed to it here.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable
from pathlib import Path

from rollcall.core.config import default_config, load_config, serialize_config
from rollcall.core.errors import StorageError
from rollcall.storage.fs import (
    ENTITIES_NS,
    META_NS,
    QUEUE_NS,
    ROLLCALL_DIR,
    atomic_write,
    ensure_rollcall_dirs,
)
from rollcall.storage.local_store import LocalStore
from rollcall.storage.locks import acquire_lock
from rollcall.storage.meta import SyncMetadata
from rollcall.storage.queue import MutationQueue
from rollcall.sync.connectivity import ConnectivityMonitor
from rollcall.sync.engine import RetryPolicy, SyncEngine, SyncReport
from rollcall.sync.remote import HttpRemoteApi, RemoteApi
from rollcall.sync.state import SyncState

TOKEN_ENV = "ROLLCALL_TOKEN"
CLIENT_LOCK_KEY = "client"


def token_from_env() -> str | None:
    """Bearer credential provider reading ``ROLLCALL_TOKEN``."""
    return os.environ.get(TOKEN_ENV) or None


def init_state_dir(root: Path, *, api_url: str | None = None) -> Path:
    """Create ``root/.rollcall`` with a default config.  Idempotent.

    Returns the state directory.
    """
    ensure_rollcall_dirs(root)
    state_dir = root / ROLLCALL_DIR
    config_path = state_dir / "config.json"
    if not config_path.exists():
        config = default_config()
        if api_url:
            config["api_url"] = api_url
        atomic_write(config_path, serialize_config(config))
    return state_dir


def read_config(state_dir: Path) -> dict:
    """Load ``config.json`` from *state_dir*, merged over the defaults."""
    config_path = state_dir / "config.json"
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise StorageError(f"No config.json in {state_dir}") from None
    try:
        return load_config(raw)
    except ValueError as exc:
        raise StorageError(f"Invalid config.json in {state_dir}: {exc}") from None


class RollcallClient:
    """Owns one state directory for its lifetime.

    Holds ``locks/client.lock`` from construction until :meth:`close`, so a
    second process opening the same directory fails with ``LockTimeout``.
    """

    def __init__(
        self,
        state_dir: Path,
        config: dict | None = None,
        *,
        remote: RemoteApi | None = None,
        token_provider: Callable[[], str | None] = token_from_env,
        clock: Callable[[], float] = time.time,
        lock_timeout: float = 1.0,
    ) -> None:
        if not state_dir.is_dir():
            raise StorageError(f"State directory does not exist: {state_dir}")
        self.state_dir = state_dir
        self.config = config if config is not None else read_config(state_dir)
        (state_dir / "locks").mkdir(exist_ok=True)
        self._lock = acquire_lock(state_dir / "locks", CLIENT_LOCK_KEY, timeout=lock_timeout)
        try:
            self.store = LocalStore(state_dir / ENTITIES_NS)
            self.queue = MutationQueue(state_dir / QUEUE_NS, clock=clock)
            self.state = SyncState(meta=SyncMetadata(state_dir / META_NS))
            self.monitor = ConnectivityMonitor(
                self.state,
                stability_window=float(self.config["connectivity"]["stability_window"]),
            )
            self.remote = remote or HttpRemoteApi(
                self.config["api_url"],
                token_provider,
                timeout=float(self.config["request_timeout"]),
            )
            self.engine = SyncEngine(
                self.store,
                self.queue,
                self.remote,
                self.state,
                retry=RetryPolicy.from_config(self.config),
                request_timeout=float(self.config["request_timeout"]),
                clock=clock,
            )
            self.engine.attach(self.monitor)
        except BaseException:
            self._lock.release()
            raise

    async def sync_once(self) -> SyncReport | None:
        """Probe the server once and, if reachable, run a single sync.

        Returns ``None`` when the server could not be reached.
        """
        try:
            reachable = await self.remote.ping()
        except Exception:
            reachable = False
        # Record the probe without letting the reconnect subscriber start a
        # second sync alongside the explicit one below.
        self.engine.detach(self.monitor)
        try:
            self.monitor.report(reachable, debounce=False)
        finally:
            self.engine.attach(self.monitor)
        if not reachable:
            return None
        return await self.engine.sync()

    async def watch(self, *, probe_interval: float | None = None) -> None:
        """Probe connectivity forever; reconnects trigger a sync."""
        interval = probe_interval or float(self.config["connectivity"]["probe_interval"])
        try:
            await self.monitor.probe_loop(self.remote.ping, interval)
        except asyncio.CancelledError:
            await self.monitor.wait_for_subscribers()
            raise

    def close(self) -> None:
        self.engine.detach(self.monitor)
        self.monitor.close()
        self._lock.release()

    def __enter__(self) -> RollcallClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
