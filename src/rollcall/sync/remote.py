"""Remote API contract and its HTTP/JSON implementation.

The engine only sees :class:`RemoteApi`.  Every method either returns a
canonical entity (or list of them) or raises one of the classified errors
in :mod:`rollcall.core.errors`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from rollcall.core.entities import CachedEntity, OpKind, QueueItem
from rollcall.core.errors import (
    AuthError,
    NetworkError,
    ServerUnavailable,
    SyncError,
    classify_status,
)

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


class RemoteApi(Protocol):
    async def submit_mutation(self, item: QueueItem) -> CachedEntity:
        """Apply *item* server-side, keyed by ``item.id``, and return the result."""

    async def fetch_changes_since(self, since: str | None) -> list[CachedEntity]:
        """Return entities changed after *since* (everything when ``None``)."""

    async def ping(self) -> bool:
        """Return ``True`` when the server is reachable."""


def mutation_body(item: QueueItem) -> dict:
    """Build the JSON body sent for a queued mutation."""
    return {
        "id": item.id,
        "op": item.op.value,
        "kind": item.entity_kind.value,
        "entity_id": item.entity_id,
        "payload": item.payload,
    }


def parse_entity(data: object) -> CachedEntity:
    """Deserialize a canonical entity from a response body.

    A body that does not have the expected shape is treated as a transient
    server fault; resubmission is safe because of the idempotency key.
    """
    try:
        return CachedEntity.from_dict(data)  # type: ignore[arg-type]
    except (ValueError, TypeError) as exc:
        raise ServerUnavailable(f"malformed entity in response: {exc}") from None


class HttpRemoteApi:
    """:class:`RemoteApi` over HTTP using ``urllib.request``.

    Blocking calls run in a worker thread so the event loop stays free.

    Routes, relative to ``api_url``:

    * ``POST /sync/mutations`` -> ``{"entity": {...}}``
    * ``GET /sync/changes?since=<ts>`` -> ``{"entities": [...]}``
    * ``GET /health``
    """

    def __init__(
        self,
        api_url: str,
        token_provider: Callable[[], str | None],
        *,
        timeout: float = 10.0,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._token_provider = token_provider
        self.timeout = timeout

    async def submit_mutation(self, item: QueueItem) -> CachedEntity:
        try:
            _status, data = await asyncio.to_thread(
                self._request,
                "POST",
                "/sync/mutations",
                body=mutation_body(item),
                idempotency_key=item.id,
            )
        except SyncError as exc:
            # Deleting something the server no longer has is the outcome we wanted.
            if item.op is OpKind.DELETE and exc.status == 404:
                return CachedEntity(
                    id=item.entity_id, kind=item.entity_kind, payload={}, deleted=True
                )
            raise
        if not isinstance(data, dict) or "entity" not in data:
            raise ServerUnavailable("response did not include an entity")
        return parse_entity(data["entity"])

    async def fetch_changes_since(self, since: str | None) -> list[CachedEntity]:
        path = "/sync/changes"
        if since:
            path += "?" + urlencode({"since": since})
        _status, data = await asyncio.to_thread(self._request, "GET", path)
        if not isinstance(data, dict) or not isinstance(data.get("entities"), list):
            raise ServerUnavailable("response did not include an entity list")
        return [parse_entity(entry) for entry in data["entities"]]

    async def ping(self) -> bool:
        try:
            await asyncio.to_thread(self._request, "GET", "/health", require_auth=False)
        except SyncError:
            return False
        return True

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict | None = None,
        idempotency_key: str | None = None,
        require_auth: bool = True,
    ) -> tuple[int, object]:
        headers = {"Accept": "application/json"}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        elif require_auth:
            raise AuthError("credential unavailable")
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key

        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        req = Request(self.api_url + path, data=data, headers=headers, method=method)
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                status = resp.status
                raw = resp.read()
        except HTTPError as exc:
            raise classify_status(exc.code, _error_message(exc)) from None
        except (URLError, TimeoutError, ConnectionError) as exc:
            raise NetworkError(f"{method} {path}: {exc}") from None
        except OSError as exc:
            raise NetworkError(f"{method} {path}: {exc}") from None

        if not raw:
            return status, None
        try:
            return status, json.loads(raw)
        except json.JSONDecodeError:
            raise ServerUnavailable(f"{method} {path}: response is not JSON") from None


def _error_message(exc: HTTPError) -> str:
    """Pull the server's ``error`` string out of an HTTP error body."""
    try:
        payload = json.loads(exc.read() or b"{}")
    except (OSError, json.JSONDecodeError):
        payload = {}
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return f"HTTP {exc.code}"
