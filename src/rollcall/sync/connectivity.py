"""Online/offline tracking with debounced, edge-triggered transition events.

State is the single source of truth: there is no event backlog, and
subscribers are expected to resample :attr:`ConnectivityMonitor.online`
rather than count events.

Subscribers are fire-and-forget: a failing subscriber is logged and never
stops delivery to the others.  A subscriber
may be a plain function or a coroutine function; coroutines are scheduled
as tasks on the running loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from rollcall.sync.state import SyncState

logger = logging.getLogger(__name__)


class ConnectivityEvent(str, Enum):
    BECAME_ONLINE = "became_online"
    BECAME_OFFLINE = "became_offline"


Subscriber = Callable[[ConnectivityEvent], object]


class ConnectivityMonitor:
    """Debounces raw reachability reports into stable transitions.

    A reported state must hold for ``stability_window`` seconds before the
    transition fires.  A report that flips back inside the window cancels
    the pending transition.  A window of zero fires immediately.
    """

    def __init__(self, state: SyncState, *, stability_window: float = 2.0) -> None:
        self._state = state
        self.stability_window = stability_window
        self._observed = state.online
        self._pending: asyncio.TimerHandle | None = None
        self._subscribers: list[Subscriber] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def online(self) -> bool:
        return self._state.online

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, fn: Subscriber) -> None:
        if fn not in self._subscribers:
            self._subscribers.append(fn)

    def unsubscribe(self, fn: Subscriber) -> None:
        try:
            self._subscribers.remove(fn)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def report(self, observed: bool, *, debounce: bool = True) -> None:
        """Record a raw reachability observation.

        Must be called from the event loop thread when debouncing, since the
        confirmation is scheduled with ``loop.call_later``.
        """
        self._observed = observed
        if observed == self._state.online:
            self._cancel_pending()
            return
        if not debounce or self.stability_window <= 0:
            self._cancel_pending()
            self._commit(observed)
            return
        if self._pending is None:
            loop = asyncio.get_running_loop()
            self._pending = loop.call_later(self.stability_window, self._confirm, observed)

    def _confirm(self, target: bool) -> None:
        self._pending = None
        if self._observed == target and self._state.online != target:
            self._commit(target)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _commit(self, online: bool) -> None:
        self._state.online = online
        event = ConnectivityEvent.BECAME_ONLINE if online else ConnectivityEvent.BECAME_OFFLINE
        logger.info("connectivity: %s", event.value)
        for fn in list(self._subscribers):
            try:
                result = fn(event)
            except Exception:
                logger.exception("connectivity subscriber %r failed", fn)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("connectivity subscriber task failed: %s", task.exception())

    async def wait_for_subscribers(self) -> None:
        """Wait until every subscriber coroutine scheduled so far finishes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def probe_loop(
        self,
        probe: Callable[[], Awaitable[bool]],
        interval: float,
    ) -> None:
        """Call *probe* every *interval* seconds and report what it says.

        A probe that raises counts as offline.  Runs until cancelled.
        """
        while True:
            try:
                reachable = bool(await probe())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("connectivity probe failed: %s", exc)
                reachable = False
            self.report(reachable)
            await asyncio.sleep(interval)

    def close(self) -> None:
        self._cancel_pending()
        self._subscribers.clear()
