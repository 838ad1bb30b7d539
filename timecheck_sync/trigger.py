"""
Sync trigger.

Fires sync attempts on a fixed interval and when connectivity comes back.
At most one attempt runs at a time; a trigger that fires while an attempt
is in flight is dropped, not queued.
"""

import asyncio
import logging
from enum import Enum

from .engine import SyncEngine
from .errors import AuthorizationError, LocalStoreError, SyncError
from .models import normalize_owner

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    OK = "ok"
    ERROR = "error"


class SyncTrigger:
    def __init__(
        self,
        engine: SyncEngine,
        owner: str,
        *,
        interval: float = 15.0,
        health_check: bool = True,
        online: bool = True,
    ) -> None:
        self.engine = engine
        self.owner = normalize_owner(owner)
        self.interval = max(0.01, float(interval))
        self.health_check = health_check
        self.online = online

        self.status = SyncStatus.IDLE
        self.last_error: str | None = None
        self.last_synced_at: str | None = engine.store.get_cursor(self.owner)

        self._in_flight = False
        self._runner: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def attempt(self, reason: str = "manual") -> str | None:
        """
        Run one sync attempt and return the new cursor.

        Returns None when the attempt was dropped or failed; failures are
        recorded in ``status`` and ``last_error``.
        """
        if self._in_flight:
            logger.debug("Sync already in flight; dropping %s trigger", reason)
            return None

        self._in_flight = True
        self.status = SyncStatus.SYNCING
        self.last_error = None
        try:
            if not self.engine.credentials.get_token():
                raise AuthorizationError("Sign in to synchronise")
            if self.health_check:
                await self.engine.remote.check_health()
            cursor = await self.engine.sync(self.owner)
        except (SyncError, LocalStoreError) as exc:
            self.status = SyncStatus.ERROR
            self.last_error = str(exc) or exc.__class__.__name__
            logger.warning("Sync failed owner=%s reason=%s: %s", self.owner, reason, self.last_error)
            return None
        finally:
            self._in_flight = False

        self.status = SyncStatus.OK
        self.last_synced_at = cursor
        return cursor

    def set_online(self, online: bool) -> asyncio.Task | None:
        """Record connectivity; going from offline to online schedules an attempt."""
        came_back = online and not self.online
        self.online = online
        if not came_back:
            return None
        logger.info("Connectivity regained; syncing owner=%s", self.owner)
        task = asyncio.get_running_loop().create_task(self.attempt("online"))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def run(self) -> None:
        """Attempt a sync every ``interval`` seconds while online. Cancel to stop."""
        while True:
            await asyncio.sleep(self.interval)
            if self.online:
                await self.attempt("interval")

    def start(self) -> asyncio.Task:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.get_running_loop().create_task(self.run())
        return self._runner

    async def stop(self) -> None:
        tasks = [t for t in (self._runner, *self._pending) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._runner = None
