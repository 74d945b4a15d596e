"""Worker entry point: wires the task queue to the browser executor."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from dotenv import load_dotenv

from executor import ExecutionStateMachine
from settings import WorkerSettings
from surface.base import AutomationSurface
from taskqueue import IngestionChannel, RealtimeFeed, TaskStoreClient

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

log = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO, log_file: str | None = "worker.log") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # console plus a persistent log file
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)


class Worker:
    """Owns the store client, the surface, the executor and both ingestion loops."""

    def __init__(self, settings: WorkerSettings, *, surface: AutomationSurface | None = None) -> None:
        self.settings = settings
        self.store = TaskStoreClient(
            settings.store_url,
            settings.store_key,
            table=settings.table,
            schema=settings.schema,
            timeout_s=settings.store_timeout_s,
            finalize_attempts=settings.finalize_attempts,
        )
        if surface is None:
            from surface.browser import BrowserSurface

            surface = BrowserSurface(
                profile=settings.profile,
                headless=settings.headless,
                user_data_dir=settings.user_data_dir,
            )
        self.surface = surface
        self.machine = ExecutionStateMachine(
            surface,
            self.store,
            target_url=settings.target_url,
            profile=settings.profile,
            chunk_size=settings.chunk_size,
            chunk_delay_ms=settings.chunk_delay_ms,
            settle_delay_ms=settings.settle_delay_ms,
            harvest_interval_ms=settings.harvest_interval_ms,
            stability_threshold=settings.stability_threshold,
            reload_backoff_s=settings.reload_backoff_s,
            dispatch_timeout_s=settings.dispatch_timeout_s,
            harvest_timeout_s=settings.harvest_timeout_s,
            queue_limit=settings.queue_limit,
        )
        feed = None
        if settings.realtime_enabled:
            feed = RealtimeFeed(
                settings.store_url,
                settings.store_key,
                table=settings.table,
                schema=settings.schema,
            )
        self.ingestion = IngestionChannel(
            self.store,
            self.machine,
            feed=feed,
            poll_interval_s=settings.poll_interval_s,
            reconnect_delay_s=settings.reconnect_delay_s,
        )

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        stop_event = stop_event or asyncio.Event()
        log.info("Worker starting against %s (table %s)", self.settings.target_url, self.settings.table)
        runner = self.machine.start()
        loops = self.ingestion.start()
        waiter = asyncio.create_task(stop_event.wait())
        try:
            done, _ = await asyncio.wait([runner, waiter, *loops], return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is not waiter and not task.cancelled() and task.exception() is not None:
                    log.error("Worker component stopped", exc_info=task.exception())
        finally:
            waiter.cancel()
            await self.shutdown()

    async def shutdown(self) -> None:
        log.info("Worker shutting down")
        self.ingestion.shutdown()
        await self.machine.stop()
        await self.surface.close()
        await self.store.close()


async def _serve(settings: WorkerSettings) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)
    await Worker(settings).run(stop_event)


def main() -> None:
    """Worker startup sequence."""

    load_dotenv()
    configure_logging()
    settings = WorkerSettings.from_env()
    try:
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        log.info("Interrupted")


if __name__ == "__main__":
    main()
