from __future__ import annotations

import asyncio
import logging
import threading
from enum import Enum
from typing import Callable, List, Optional

from .aggregator import build_views
from .models import CLIENTS, COLLECTIONS, REQUESTS, AdminContext, AggregateViews, ChangeEvent
from .repository import RecordSource, SubscriptionHandle

logger = logging.getLogger(__name__)

ViewsListener = Callable[[AggregateViews], None]


class ControllerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUBSCRIBED = "subscribed"
    RECOMPUTING = "recomputing"
    DISPOSED = "disposed"


class AggregateStore:
    """
    Read-only holder of the latest published ``AggregateViews``.

    The four views live in one immutable object that is swapped as a whole,
    so readers never see a mix of two computations. Only the owning
    controller replaces it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._views = AggregateViews.empty()
        self._version = 0
        self._listeners: List[ViewsListener] = []

    @property
    def current(self) -> AggregateViews:
        return self._views

    @property
    def version(self) -> int:
        return self._version

    @property
    def has_data(self) -> bool:
        return self._version > 0

    def add_listener(self, listener: ViewsListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ViewsListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _replace(self, views: AggregateViews) -> None:
        with self._lock:
            self._views = views
            self._version += 1
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(views)
            except Exception as exc:
                logger.warning("Aggregate views listener failed: %s", exc)


class AggregationController:
    """
    Keeps the dashboard aggregates of one admin session in sync with the
    record source.

    Every change notification triggers a full re-fetch of both collections
    followed by a full recompute. Cycles never overlap: a notification that
    arrives while a cycle is running marks the state dirty and the running
    cycle goes around once more, so results are published in issue order.
    Fetch failures are logged and leave the published views untouched.
    """

    def __init__(
        self,
        source: RecordSource,
        timezone: str = "UTC",
        sort_snapshots: bool = True,
    ) -> None:
        self.source = source
        self.timezone = timezone
        self.sort_snapshots = sort_snapshots
        self.state = ControllerState.IDLE
        self.context: Optional[AdminContext] = None
        self.last_error: Optional[Exception] = None
        self._store = AggregateStore()
        self._handles: List[SubscriptionHandle] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loading: Optional[asyncio.Future] = None
        self._cycle: Optional[asyncio.Task] = None
        self._dirty = False

    @property
    def views(self) -> AggregateStore:
        return self._store

    @property
    def session_id(self) -> Optional[str]:
        return self.context.session_id if self.context else None

    async def activate(self, context: AdminContext) -> bool:
        """
        Enter the admin dashboard for ``context``.

        The first activation loads and publishes the aggregates and leaves the
        change subscriptions open. A failed load keeps the controller in
        ``LOADING`` until the next activation. Re-entering an active session
        forces a recompute. Returns whether aggregates are available.
        """

        if self.state is ControllerState.DISPOSED:
            logger.info("Ignoring activation of disposed dashboard session %s", context.session_id)
            return False
        if not context.is_admin:
            logger.info("User %s is not an admin; dashboard analytics stay inactive", context.user_id)
            return False

        self.context = context
        self._loop = asyncio.get_running_loop()

        if self.state in (ControllerState.SUBSCRIBED, ControllerState.RECOMPUTING):
            await self.refresh()
            return True

        if self._loading is None or self._loading.done():
            self.state = ControllerState.LOADING
            self._open_subscriptions()
            self._loading = asyncio.ensure_future(self._initial_load())
        return await asyncio.shield(self._loading)

    def notify(self, event: Optional[ChangeEvent] = None) -> None:
        """
        Change subscription callback. Safe to call from any thread.
        """

        loop = self._loop
        if loop is None or self.state is ControllerState.DISPOSED:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._schedule(event)
            return
        try:
            loop.call_soon_threadsafe(self._schedule, event)
        except RuntimeError:
            logger.debug("Dropped change notification for closed loop: %s", event)

    async def refresh(self) -> None:
        if self.state not in (ControllerState.SUBSCRIBED, ControllerState.RECOMPUTING):
            return
        self._schedule(None)
        await self.wait_idle()

    async def wait_idle(self) -> None:
        while True:
            pending = [task for task in (self._loading, self._cycle) if task is not None and not task.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    def dispose(self) -> None:
        if self.state is ControllerState.DISPOSED:
            return
        logger.info("Disposing dashboard session %s", self.session_id)
        self.state = ControllerState.DISPOSED
        self._dirty = False
        self._close_subscriptions()
        self.context = None

    async def __aenter__(self) -> "AggregationController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    def _schedule(self, event: Optional[ChangeEvent]) -> None:
        if self.state is ControllerState.DISPOSED or self._loop is None:
            return
        if event is not None:
            logger.debug("Change on %s (%s) for session %s", event.collection, event.event_type, self.session_id)
        self._dirty = True
        if self.state is ControllerState.LOADING:
            return
        if self._cycle is None or self._cycle.done():
            self._cycle = self._loop.create_task(self._run_cycles())

    async def _initial_load(self) -> bool:
        self._dirty = False
        views = await self._compute()
        if self.state is ControllerState.DISPOSED:
            return False
        if views is None:
            self._close_subscriptions()
            return False
        self._store._replace(views)
        self.state = ControllerState.SUBSCRIBED
        logger.info("Dashboard session %s subscribed", self.session_id)
        if self._dirty:
            self._cycle = asyncio.get_running_loop().create_task(self._run_cycles())
        return True

    async def _run_cycles(self) -> None:
        try:
            while self._dirty and self.state is not ControllerState.DISPOSED:
                self._dirty = False
                self.state = ControllerState.RECOMPUTING
                views = await self._compute()
                if self.state is ControllerState.DISPOSED:
                    logger.debug("Discarding aggregates computed after disposal")
                    return
                if views is not None:
                    self._store._replace(views)
        finally:
            if self.state is not ControllerState.DISPOSED:
                self.state = ControllerState.SUBSCRIBED

    async def _compute(self) -> Optional[AggregateViews]:
        try:
            requests, clients = await asyncio.gather(
                asyncio.to_thread(self.source.fetch_all, REQUESTS),
                asyncio.to_thread(self.source.fetch_all, CLIENTS),
            )
        except Exception as exc:
            self.last_error = exc
            logger.warning("Failed to refresh dashboard aggregates for session %s: %s", self.session_id, exc)
            return None
        try:
            views = build_views(requests, clients, timezone=self.timezone, sort=self.sort_snapshots)
        except Exception as exc:
            self.last_error = exc
            logger.warning("Failed to aggregate dashboard data for session %s: %s", self.session_id, exc)
            return None
        self.last_error = None
        return views

    def _open_subscriptions(self) -> None:
        if self._handles:
            return
        for collection in COLLECTIONS:
            self._handles.append(self.source.subscribe(collection, self.notify))

    def _close_subscriptions(self) -> None:
        handles, self._handles = self._handles, []
        for handle in handles:
            try:
                self.source.unsubscribe(handle)
            except Exception as exc:
                logger.warning("Failed to close %s subscription: %s", handle.collection, exc)
