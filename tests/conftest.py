"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import copy
import json
import random
from dataclasses import replace
from pathlib import Path

import pytest
from click.testing import CliRunner

from rollcall.core.entities import CachedEntity, EntityKind, OpKind, QueueItem, format_timestamp
from rollcall.core.errors import NetworkError, SyncError, ValidationError

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock whose ``sleep`` just moves time forward."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeServer:
    """In-memory implementation of the remote API.

    Mutations are deduplicated by item id, the way the real server honours
    the idempotency key.  ``failures`` is a script of exceptions raised by
    the next submissions, one per call; ``lose_responses`` applies the
    next N mutations but reports a network error to the caller.
    """

    def __init__(self) -> None:
        self.entities: dict[str, CachedEntity] = {}
        self.responses: dict[str, CachedEntity] = {}
        self.calls: list[QueueItem] = []
        self.applied: list[str] = []
        self.failures: list[SyncError] = []
        self.lose_responses = 0
        self.reachable = True
        self.fetch_error: SyncError | None = None
        self.fetch_calls: list[str | None] = []
        self.on_submit = None
        self._counter = 0
        self._ids = 0

    # -- helpers --------------------------------------------------------

    def _stamp(self) -> str:
        self._counter += 1
        return format_timestamp(1_800_000_000 + self._counter)

    def _next_id(self, kind: EntityKind) -> str:
        self._ids += 1
        prefix = "per" if kind is EntityKind.PERSON else "ses"
        return f"{prefix}_{self._ids:04d}"

    def seed(
        self, kind: EntityKind, entity_id: str, payload: dict, version: int = 1
    ) -> CachedEntity:
        """Place an entity on the server as if another client created it."""
        entity = CachedEntity(
            id=entity_id,
            kind=kind,
            payload=dict(payload),
            version=version,
            updated_at=self._stamp(),
        )
        self.entities[entity.key] = entity
        return copy.deepcopy(entity)

    def remote_delete(self, kind: EntityKind, entity_id: str) -> None:
        """Delete an entity server-side, leaving a tombstone for pulls."""
        key = f"{kind.value}:{entity_id}"
        entity = self.entities[key]
        self.entities[key] = replace(
            entity, deleted=True, version=entity.version + 1, updated_at=self._stamp()
        )

    def remote_update(self, kind: EntityKind, entity_id: str, changes: dict) -> None:
        key = f"{kind.value}:{entity_id}"
        entity = self.entities[key]
        self.entities[key] = replace(
            entity,
            payload={**entity.payload, **changes},
            version=entity.version + 1,
            updated_at=self._stamp(),
        )

    def live(self, kind: EntityKind) -> list[CachedEntity]:
        return [e for e in self.entities.values() if e.kind is kind and not e.deleted]

    def _apply(self, item: QueueItem) -> CachedEntity:
        key = f"{item.entity_kind.value}:{item.entity_id}"
        if item.op is OpKind.CREATE:
            if item.entity_kind is EntityKind.ATTENDANCE_SESSION:
                for record in item.payload.get("records", []):
                    person_key = f"person:{record['person_id']}"
                    if person_key not in self.entities or self.entities[person_key].deleted:
                        raise ValidationError(
                            f"unknown person {record['person_id']}", status=422
                        )
            entity = CachedEntity(
                id=self._next_id(item.entity_kind),
                kind=item.entity_kind,
                payload=copy.deepcopy(item.payload),
                version=1,
                client_ref=item.entity_id,
                updated_at=self._stamp(),
            )
        else:
            existing = self.entities.get(key)
            if existing is None:
                raise ValidationError(f"{item.entity_id} not found", status=404)
            if item.op is OpKind.UPDATE:
                entity = replace(
                    existing,
                    payload={**existing.payload, **item.payload},
                    version=existing.version + 1,
                    updated_at=self._stamp(),
                )
            else:
                entity = replace(
                    existing, deleted=True, version=existing.version + 1, updated_at=self._stamp()
                )
        self.entities[entity.key] = entity
        self.applied.append(item.id)
        return entity

    # -- RemoteApi ------------------------------------------------------

    async def submit_mutation(self, item: QueueItem) -> CachedEntity:
        self.calls.append(copy.deepcopy(item))
        # Yield like a real request would, so concurrent callers interleave.
        await asyncio.sleep(0)
        if self.on_submit is not None:
            self.on_submit(item)
        if self.failures:
            raise self.failures.pop(0)
        if item.id in self.responses:
            return copy.deepcopy(self.responses[item.id])
        entity = self._apply(item)
        self.responses[item.id] = entity
        if self.lose_responses:
            self.lose_responses -= 1
            raise NetworkError("connection reset after request was sent")
        return copy.deepcopy(entity)

    async def fetch_changes_since(self, since: str | None) -> list[CachedEntity]:
        self.fetch_calls.append(since)
        if self.fetch_error is not None:
            raise self.fetch_error
        changed = [
            e for e in self.entities.values() if since is None or (e.updated_at or "") >= since
        ]
        return [copy.deepcopy(e) for e in sorted(changed, key=lambda e: e.updated_at or "")]

    async def ping(self) -> bool:
        return self.reachable


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def rollcall_root(tmp_path: Path) -> Path:
    """Return a temporary directory suitable for initializing .rollcall/ in."""
    return tmp_path


@pytest.fixture()
def state_dir(rollcall_root: Path) -> Path:
    """Return an initialized .rollcall/ state directory."""
    from rollcall.client import init_state_dir

    return init_state_dir(rollcall_root)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture()
def make_engine(state_dir: Path, server: FakeServer, clock: FakeClock):
    """Return a factory building an engine over ``state_dir``.

    Calling it again simulates a process restart: every component reloads
    from disk.
    """
    from rollcall.storage.fs import ENTITIES_NS, META_NS, QUEUE_NS
    from rollcall.storage.local_store import LocalStore
    from rollcall.storage.meta import SyncMetadata
    from rollcall.storage.queue import MutationQueue
    from rollcall.sync.engine import RetryPolicy, SyncEngine
    from rollcall.sync.state import SyncState

    def _make(*, online: bool = True, remote=None, **kwargs):
        retry = kwargs.pop(
            "retry", RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=60.0, jitter=0.0)
        )
        return SyncEngine(
            LocalStore(state_dir / ENTITIES_NS),
            MutationQueue(state_dir / QUEUE_NS, clock=clock),
            remote if remote is not None else server,
            SyncState(meta=SyncMetadata(state_dir / META_NS), online=online),
            retry=retry,
            clock=clock,
            sleep=clock.sleep,
            rng=random.Random(0),
            **kwargs,
        )

    return _make


@pytest.fixture()
def engine(make_engine):
    return make_engine()


@pytest.fixture()
def cli_runner() -> CliRunner:
    """Return a Click CliRunner for invoking CLI commands."""
    return CliRunner()


@pytest.fixture()
def cli_env(state_dir: Path) -> dict[str, str]:
    """Return env dict with ROLLCALL_ROOT pointing at the initialized root."""
    return {"ROLLCALL_ROOT": str(state_dir.parent)}


@pytest.fixture()
def cli_server(server: FakeServer, monkeypatch: pytest.MonkeyPatch) -> FakeServer:
    """Route every CLI-built client to the in-memory server."""
    monkeypatch.setattr("rollcall.client.HttpRemoteApi", lambda *args, **kwargs: server)
    return server


@pytest.fixture()
def invoke(cli_runner: CliRunner, cli_env: dict[str, str], cli_server: FakeServer):
    """Return a helper that invokes CLI commands with the right environment.

    Usage::

        result = invoke("person", "add", "Ana")
    """
    from rollcall.cli.main import cli

    def _invoke(*args: str, **kwargs):
        return cli_runner.invoke(cli, list(args), env=cli_env, **kwargs)

    return _invoke


@pytest.fixture()
def invoke_json(invoke):
    """Like invoke, but appends --json and parses the response.

    Returns (parsed_dict, exit_code) tuple.
    """

    def _invoke_json(*args: str) -> tuple[dict, int]:
        result = invoke(*args, "--json")
        parsed = json.loads(result.output)
        return parsed, result.exit_code

    return _invoke_json
