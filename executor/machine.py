from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Coroutine, Literal, Protocol

from surface.base import AutomationSurface, SurfaceError, classify_page_error
from surface.extraction import extract_payload
from surface.messages import (
    ChunkProgress,
    Harvested,
    InjectionSuccess,
    ScriptError,
    SurfaceFailed,
    SurfaceLoaded,
    SurfaceMessage,
)
from surface.scripts import (
    DEFAULT_CHUNK_DELAY_MS,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_HARVEST_INTERVAL_MS,
    DEFAULT_SETTLE_DELAY_MS,
    DEFAULT_STABILITY_THRESHOLD,
    PageProfile,
    build_dispatch_script,
    build_harvest_script,
    build_retire_script,
)
from taskqueue.models import InvalidTransition, Task
from taskqueue.store import StoreWriteError

log = logging.getLogger(__name__)

MachineState = Literal[
    "idle",
    "surface_loading",
    "ready",
    "dispatching",
    "harvesting",
    "completing",
    "recovering",
]

CYCLE_STATES: frozenset[str] = frozenset({"dispatching", "harvesting"})

RETIRE_TIMEOUT_S = 5.0


class ResultWriter(Protocol):
    async def finalize(self, task: Task) -> None:
        ...


@dataclass(slots=True, frozen=True)
class TaskArrived:
    task: Task


@dataclass(slots=True, frozen=True)
class DeadlineExpired:
    cycle: int
    phase: str


@dataclass(slots=True, frozen=True)
class ReloadDue:
    pass


Event = SurfaceMessage | TaskArrived | DeadlineExpired | ReloadDue


class ExecutionStateMachine:
    """Drives one automation surface through dispatch/harvest cycles.

    Every event (task arrivals, page callbacks, load signals, deadlines) goes
    through ``post`` into one inbox consumed by ``run``; state is only touched
    from that consumer.
    """

    def __init__(
        self,
        surface: AutomationSurface,
        store: ResultWriter,
        *,
        target_url: str,
        profile: PageProfile | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_delay_ms: int = DEFAULT_CHUNK_DELAY_MS,
        settle_delay_ms: int = DEFAULT_SETTLE_DELAY_MS,
        harvest_interval_ms: int = DEFAULT_HARVEST_INTERVAL_MS,
        stability_threshold: int = DEFAULT_STABILITY_THRESHOLD,
        reload_backoff_s: float = 3.0,
        dispatch_timeout_s: float = 120.0,
        harvest_timeout_s: float = 600.0,
        queue_limit: int = 8,
    ) -> None:
        self._surface = surface
        self._store = store
        self.target_url = target_url
        self.profile = profile or PageProfile()
        self.chunk_size = chunk_size
        self.chunk_delay_ms = chunk_delay_ms
        self.settle_delay_ms = settle_delay_ms
        self.harvest_interval_ms = harvest_interval_ms
        self.stability_threshold = stability_threshold
        self.reload_backoff_s = reload_backoff_s
        self.dispatch_timeout_s = dispatch_timeout_s
        self.harvest_timeout_s = harvest_timeout_s
        self.queue_limit = max(0, queue_limit)

        self.state: MachineState = "idle"
        self.current_task: Task | None = None
        self.surface_ready = False
        self._pending: deque[Task] = deque()
        self._cycle = 0
        self._inbox: asyncio.Queue[Event] = asyncio.Queue()
        self._deadline: asyncio.TimerHandle | None = None
        self._reload_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._runner: asyncio.Task | None = None
        self._arrivals = 0

        self._surface.set_listener(self.post)

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def busy(self) -> bool:
        return self.current_task is not None

    def has_capacity(self) -> bool:
        held = self._arrivals + len(self._pending) + (1 if self.current_task is not None else 0)
        return held < self.queue_limit + 1

    def post(self, event: Event) -> None:
        self._inbox.put_nowait(event)

    def submit(self, task: Task) -> None:
        if task.status != "processing":
            raise InvalidTransition(f"Task {task.id} must be claimed before execution, got {task.status}.")
        self._arrivals += 1
        self.post(TaskArrived(task))

    def start(self) -> asyncio.Task:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run(), name="execution-state-machine")
        return self._runner

    async def stop(self) -> None:
        self._cancel_deadline()
        tasks = [t for t in (self._runner, self._reload_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._runner = None
        self._reload_task = None

    async def run(self) -> None:
        self._set_state("surface_loading")
        try:
            await self._surface.start(self.target_url)
        except SurfaceError as exc:
            self._recover(exc.diagnostic())
        while True:
            event = await self._inbox.get()
            try:
                await self._handle(event)
            except Exception:
                log.exception("Unhandled error while processing %r", event)
                self._recover("EXECUTION_ERROR: internal executor failure")
            finally:
                self._inbox.task_done()

    async def drain(self) -> None:
        """Wait until the inbox is empty and background work has settled."""
        while True:
            await self._inbox.join()
            pending = [t for t in self._background if not t.done()]
            if self._reload_task is not None and not self._reload_task.done():
                pending.append(self._reload_task)
            if not pending:
                if self._inbox.empty():
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    def _set_state(self, state: MachineState) -> None:
        if state != self.state:
            log.info("Executor state %s -> %s", self.state, state)
        self.state = state

    async def _handle(self, event: Event) -> None:
        if isinstance(event, TaskArrived):
            self._arrivals = max(0, self._arrivals - 1)
            await self._on_task(event.task)
        elif isinstance(event, SurfaceLoaded):
            await self._on_loaded(event)
        elif isinstance(event, SurfaceFailed):
            self._recover(event.message)
        elif isinstance(event, ReloadDue):
            await self._on_reload_due()
        elif isinstance(event, DeadlineExpired):
            self._on_deadline(event)
        elif isinstance(event, ChunkProgress):
            if self._is_current(event.cycle):
                log.debug("Injected chunk %d of %d", event.current, event.total)
        elif isinstance(event, InjectionSuccess):
            await self._on_injected(event)
        elif isinstance(event, Harvested):
            await self._on_harvested(event)
        elif isinstance(event, ScriptError):
            self._on_script_error(event)
        else:
            log.warning("Ignoring unknown event %r", event)

    def _is_current(self, cycle: int | None) -> bool:
        return cycle is None or cycle == self._cycle

    async def _on_task(self, task: Task) -> None:
        held = len(self._pending) + (1 if self.current_task is not None else 0)
        if held >= self.queue_limit + 1:
            log.error("Executor queue full; failing task %s", task.id)
            self._finalize(task.failed("QUEUE_FULL: worker could not accept the task"))
            return
        self._pending.append(task)
        log.info("Task %s queued (%d waiting, state %s)", task.id, len(self._pending), self.state)
        await self._start_next()

    async def _on_loaded(self, event: SurfaceLoaded) -> None:
        if self.state in CYCLE_STATES:
            self._recover("SURFACE_ERROR: page navigated during an active task")
            return
        if self.state not in ("idle", "surface_loading"):
            log.debug("Ignoring load signal in state %s", self.state)
            return
        self.surface_ready = True
        self._set_state("ready")
        await self._start_next()

    async def _start_next(self) -> None:
        if self.state != "ready" or self.current_task is not None or not self._pending:
            return
        task = self._pending.popleft()
        self.current_task = task
        self._cycle += 1
        self._set_state("dispatching")
        log.info("Dispatching task %s (cycle %d, %d chars)", task.id, self._cycle, len(task.prompt))
        script = build_dispatch_script(
            task.prompt,
            cycle=self._cycle,
            profile=self.profile,
            chunk_size=self.chunk_size,
            chunk_delay_ms=self.chunk_delay_ms,
            settle_delay_ms=self.settle_delay_ms,
        )
        self._arm_deadline("dispatching", self.dispatch_timeout_s)
        try:
            await self._surface.run_script(script)
        except SurfaceError as exc:
            self._recover(exc.diagnostic())

    async def _on_injected(self, event: InjectionSuccess) -> None:
        if self.state != "dispatching" or not self._is_current(event.cycle):
            log.debug("Ignoring stale injection callback (cycle %s)", event.cycle)
            return
        log.info("Prompt submitted: %s", event.message)
        self._set_state("harvesting")
        script = build_harvest_script(
            cycle=self._cycle,
            profile=self.profile,
            interval_ms=self.harvest_interval_ms,
            stability_threshold=self.stability_threshold,
        )
        self._arm_deadline("harvesting", self.harvest_timeout_s)
        try:
            await self._surface.run_script(script)
        except SurfaceError as exc:
            self._recover(exc.diagnostic())

    async def _on_harvested(self, event: Harvested) -> None:
        if self.state != "harvesting" or not self._is_current(event.cycle):
            log.debug("Ignoring stale harvest callback (cycle %s)", event.cycle)
            return
        self._cancel_deadline()
        self._set_state("completing")
        task = self.current_task
        if task is not None:
            self._finalize(task.completed(extract_payload(event.payload)))
            log.info("Task %s completed", task.id)
        self.current_task = None
        self._set_state("ready")
        await self._start_next()

    def _on_script_error(self, event: ScriptError) -> None:
        stale = event.cycle is not None and (event.cycle != self._cycle or self.state not in CYCLE_STATES)
        if stale:
            log.debug("Ignoring stale page error (cycle %s): %s", event.cycle, event.message)
            return
        error = classify_page_error(event.message)
        log.error("Page reported %s: %s", type(error).__name__, event.message)
        self._recover(event.message)

    def _on_deadline(self, event: DeadlineExpired) -> None:
        if event.cycle != self._cycle or self.state != event.phase:
            return
        limit = self.dispatch_timeout_s if event.phase == "dispatching" else self.harvest_timeout_s
        self._recover(f"TIMEOUT: {event.phase} exceeded {limit:g}s")

    def _recover(self, diagnostic: str) -> None:
        if self.state == "recovering":
            log.debug("Already recovering; ignoring: %s", diagnostic)
            return
        log.warning("Recovering surface: %s", diagnostic)
        in_cycle = self.state in CYCLE_STATES
        self._set_state("recovering")
        self._cancel_deadline()
        self._cycle += 1
        if in_cycle:
            self._spawn(self._retire_page_cycle(self._cycle))
        task = self.current_task
        if task is not None:
            self._finalize(task.failed(diagnostic))
        self.current_task = None
        self.surface_ready = False
        self._reload_task = asyncio.create_task(self._reload_after_backoff())

    async def _retire_page_cycle(self, cycle: int) -> None:
        # Page scripts of the aborted cycle stop once the page token moves on.
        try:
            async with asyncio.timeout(RETIRE_TIMEOUT_S):
                await self._surface.run_script(build_retire_script(cycle))
        except (SurfaceError, TimeoutError) as exc:
            log.debug("Could not retire page cycle %d: %s", cycle, exc)

    async def _reload_after_backoff(self) -> None:
        await asyncio.sleep(self.reload_backoff_s)
        self.post(ReloadDue())

    async def _on_reload_due(self) -> None:
        if self.state != "recovering":
            return
        self._reload_task = None
        self._set_state("surface_loading")
        log.info("Reloading surface")
        try:
            await self._surface.reload()
        except SurfaceError as exc:
            self._recover(exc.diagnostic())

    def _arm_deadline(self, phase: str, seconds: float) -> None:
        self._cancel_deadline()
        if seconds <= 0:
            return
        loop = asyncio.get_running_loop()
        self._deadline = loop.call_later(seconds, self.post, DeadlineExpired(self._cycle, phase))

    def _cancel_deadline(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    def _finalize(self, task: Task) -> None:
        self._spawn(self._write_result(task))

    async def _write_result(self, task: Task) -> None:
        try:
            await self._store.finalize(task)
        except StoreWriteError as exc:
            log.error("Result for task %s was not written back: %s", task.id, exc)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
