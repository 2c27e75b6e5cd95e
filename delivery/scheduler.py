"""
Scheduler Loop — periodic sweep of due messages into the delivery engine.

Runs as a background task inside the FastAPI lifespan (or any event loop).

Each tick:
    Message store → pending messages with scheduled_for <= now
    → DeliveryEngine.deliver() for each, up to `concurrency` at a time
    → counts returned and logged

A message is delivered at the first tick at or after its scheduled_for, so
worst-case latency is one interval. A failing query or delivery never ends
the loop; the next tick runs on schedule.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Callable, Optional

from database.store_base import BaseMessageStore
from delivery.engine import DeliveryEngine
from models.schemas import MessageStatus

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerLoop:
    """
    Cancellable ticker driving DeliveryEngine.

    Usage:
        loop = SchedulerLoop(store, engine, interval_s=60)
        await loop.start()      # idempotent
        ...
        await loop.stop()       # idempotent, lets an in-flight tick finish
    """

    def __init__(
        self,
        store: BaseMessageStore,
        engine: DeliveryEngine,
        interval_s: float = 60.0,
        concurrency: int = 5,
        shutdown_grace_s: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.engine = engine
        self.interval_s = interval_s
        self.concurrency = concurrency
        self.shutdown_grace_s = shutdown_grace_s
        self._clock = clock
        self._semaphore = asyncio.Semaphore(concurrency)
        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the ticker as a background task. No-op if already running."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="message_scheduler")
        logger.info("message_scheduler_started",
                    interval_s=self.interval_s, concurrency=self.concurrency)

    async def stop(self) -> None:
        """Stop the ticker. No-op if not running."""
        task, self._task = self._task, None
        if task is None:
            return
        self._stop_event.set()
        if not task.done():
            # a cancellation of the caller propagates out of asyncio.wait
            done, _ = await asyncio.wait({task}, timeout=self.shutdown_grace_s)
            if not done:
                logger.warning("message_scheduler_stop_timeout",
                               grace_s=self.shutdown_grace_s)
                task.cancel()
                await asyncio.wait({task})
        logger.info("message_scheduler_stopped", ticks=self.tick_count)

    def request_stop(self) -> None:
        """Thread-safe stop signal; the task exits after its current tick."""
        if self._loop is not None and self._stop_event is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)

    async def _run(self) -> None:
        """Main loop — runs until the stop event is set."""
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("scheduler_tick_error", error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    async def tick(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Single sweep. Returns counts:
        {"due": N, "sent": N, "failed": N, "skipped": N, "errors": N}
        """
        self.tick_count += 1
        now = now or self._clock()
        stats = {"due": 0, "sent": 0, "failed": 0, "skipped": 0, "errors": 0}

        try:
            due = await self.store.list_due(now)
        except Exception as e:
            logger.error("due_query_failed", error=str(e))
            stats["errors"] = 1
            return stats

        stats["due"] = len(due)
        if not due:
            return stats

        outcomes = await asyncio.gather(*(self._deliver_one(m.id) for m in due))
        for outcome in outcomes:
            stats[outcome] += 1

        logger.info("scheduler_tick_complete", **stats)
        return stats

    async def _deliver_one(self, message_id: str) -> str:
        async with self._semaphore:
            try:
                await self.engine.deliver(message_id)
                message = await self.store.get_message(message_id)
            except Exception as e:
                logger.error("scheduled_delivery_error", message_id=message_id, error=str(e))
                return "errors"

        if message is None:
            return "errors"
        if message.status == MessageStatus.SENT:
            return "sent"
        if message.status == MessageStatus.FAILED:
            return "failed"
        return "skipped"
