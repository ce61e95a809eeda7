from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from studysync.config_manager import ConfigManager
from studysync.models import SyncResult
from studysync.sync_engine import FOLLOW_UP_TRIGGER, SyncEngine

logger = logging.getLogger(__name__)

TRIGGERS = ("startup", "edit", "timer", "focus", "replan", "manual", FOLLOW_UP_TRIGGER)


class SyncScheduler:
    """Single-consumer task queue in front of :meth:`SyncEngine.run_sync_pass`.

    Producers call :meth:`request`; while a pass is already queued further
    requests coalesce into it, since the queued pass reads the latest state anyway.
    """

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.last_result: SyncResult | None = None
        self._queue: Optional[asyncio.Queue[str]] = None
        self._pending_trigger: str | None = None
        self._consumer: Optional[asyncio.Task[None]] = None
        self._timer: Optional[asyncio.Task[None]] = None
        self._retry: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self, run_at_startup: bool = True) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._pending_trigger = None
        self._consumer = asyncio.create_task(self._consume(self._queue), name="studysync-sync-consumer")
        self._timer = asyncio.create_task(self._tick(), name="studysync-sync-timer")
        if run_at_startup:
            # One pass at startup so state is initialized quickly.
            self.request("startup")

    async def stop(self) -> None:
        tasks = [task for task in (self._retry, self._timer, self._consumer) if task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._consumer = None
        self._timer = None
        self._retry = None
        self._queue = None
        self._pending_trigger = None

    def request(self, trigger: str) -> bool:
        """Enqueue a pass; return False when it coalesced into a queued one."""
        if trigger not in TRIGGERS:
            raise ValueError(f"unknown sync trigger {trigger!r}")
        if self._queue is None:
            logger.debug("Sync request %s dropped: scheduler not running", trigger)
            return False
        if self._pending_trigger is not None:
            if trigger == FOLLOW_UP_TRIGGER:
                self._pending_trigger = trigger
            return False
        self._pending_trigger = trigger
        self._queue.put_nowait(trigger)
        return True

    async def drain(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def _consume(self, queue: asyncio.Queue[str]) -> None:
        while True:
            await queue.get()
            trigger = self._pending_trigger or "manual"
            self._pending_trigger = None
            try:
                result = await self.sync_engine.run_sync_pass(trigger)
                self.last_result = result
                if result.follow_up_required:
                    self.request(FOLLOW_UP_TRIGGER)
                elif result.status == "skipped":
                    self._schedule_retry(trigger)
            finally:
                queue.task_done()

    def _schedule_retry(self, trigger: str) -> None:
        delay = self.sync_engine.cooldown_remaining()
        if delay <= 0 or (self._retry is not None and not self._retry.done()):
            return
        self._retry = asyncio.create_task(self._retry_after(delay, trigger), name="studysync-sync-retry")

    async def _retry_after(self, delay: float, trigger: str) -> None:
        await asyncio.sleep(delay)
        self.request(trigger)

    async def _tick(self) -> None:
        while True:
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            await asyncio.sleep(interval_seconds)
            self.request("timer")
