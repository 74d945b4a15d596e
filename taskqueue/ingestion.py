from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Protocol

from taskqueue.models import Task
from taskqueue.store import StoreWriteError

log = logging.getLogger(__name__)


class TaskSource(Protocol):
    async def claim(self, task_id: str) -> bool:
        ...

    async def list_pending(self, *, limit: int = 1) -> list[Task]:
        ...


class ChangeFeed(Protocol):
    def listen(self) -> AsyncIterator[dict[str, Any]]:
        ...


class TaskSink(Protocol):
    def has_capacity(self) -> bool:
        ...

    def submit(self, task: Task) -> None:
        ...


class IngestionChannel:
    """Push and poll loops that both funnel into ``handle_pending_task``."""

    def __init__(
        self,
        store: TaskSource,
        sink: TaskSink,
        *,
        feed: ChangeFeed | None = None,
        poll_interval_s: float = 3.0,
        reconnect_delay_s: float = 5.0,
    ) -> None:
        self._store = store
        self._sink = sink
        self._feed = feed
        self._poll_interval_s = poll_interval_s
        self._reconnect_delay_s = reconnect_delay_s
        self._loops: list[asyncio.Task] = []

    async def handle_pending_task(self, task: Task) -> bool:
        if not task.id or task.status != "pending":
            return False
        if not self._sink.has_capacity():
            log.debug("Executor busy; leaving task %s pending", task.id)
            return False
        if not await self._store.claim(task.id):
            return False
        self._sink.submit(task.claimed())
        return True

    async def run_push_loop(self) -> None:
        if self._feed is None:
            return
        while True:
            try:
                async for record in self._feed.listen():
                    task = Task.from_record(record)
                    if task is None or task.status != "pending":
                        continue
                    log.info("Change feed delivered pending task %s", task.id)
                    await self.handle_pending_task(task)
            except Exception as exc:
                log.warning("Change feed dropped: %s", exc)
            await asyncio.sleep(self._reconnect_delay_s)

    async def poll_once(self) -> bool:
        try:
            pending = await self._store.list_pending(limit=1)
        except StoreWriteError as exc:
            log.debug("Poll failed: %s", exc)
            return False
        if not pending:
            return False
        log.info("Poll found pending task %s", pending[0].id)
        return await self.handle_pending_task(pending[0])

    async def run_poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                log.exception("Poll cycle failed")
            await asyncio.sleep(self._poll_interval_s)

    def start(self) -> list[asyncio.Task]:
        if self._loops:
            return self._loops
        self._loops = [asyncio.create_task(self.run_poll_loop(), name="ingestion-poll")]
        if self._feed is not None:
            self._loops.append(asyncio.create_task(self.run_push_loop(), name="ingestion-push"))
        return self._loops

    def shutdown(self) -> None:
        for task in self._loops:
            task.cancel()
        self._loops.clear()
