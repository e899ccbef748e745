"""GC Scheduler - runs cleanup tasks on a fixed interval."""

from __future__ import annotations

import asyncio

import structlog

from berth.services.gc.base import GCResult, GCTask

logger = structlog.get_logger()


class GCScheduler:
    """Runs a list of tasks serially, every ``interval_seconds``.

    A failing task is logged and recorded in its result; it never stops the
    loop. ``stop()`` cancels the sleep and waits for the loop to exit.

    Usage:
        scheduler = GCScheduler([IdleTerminalGC(terminals)], interval_seconds=300)
        await scheduler.run_once()
        await scheduler.start()
        await scheduler.stop()
    """

    def __init__(
        self,
        tasks: list[GCTask],
        *,
        interval_seconds: float,
        name: str = "janitor",
    ) -> None:
        self._tasks = tasks
        self._interval = interval_seconds
        self._name = name
        self._log = logger.bind(service="gc_scheduler", scheduler=name)

        self._running = False
        self._task: asyncio.Task | None = None

        # run_once and the background loop never overlap
        self._run_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        """Whether the background loop is running."""
        return self._running

    async def run_once(self) -> list[GCResult]:
        """Execute one cycle, waiting for an in-progress cycle first."""
        async with self._run_lock:
            return await self._run_cycle()

    async def _run_cycle(self) -> list[GCResult]:
        self._log.debug("gc.cycle.start")

        results = [await self._run_task(task) for task in self._tasks]

        self._log.info(
            "gc.cycle.complete",
            total_cleaned=sum(r.cleaned_count for r in results),
            total_errors=sum(len(r.errors) for r in results),
        )
        return results

    async def _run_task(self, task: GCTask) -> GCResult:
        try:
            result = await task.run()
            result.task_name = task.name

            self._log.info(
                "gc.task.complete",
                task=task.name,
                cleaned=result.cleaned_count,
                errors=len(result.errors),
            )
            for error in result.errors:
                self._log.warning("gc.task.item_error", task=task.name, error=error)
            return result

        except Exception as e:
            self._log.exception("gc.task.failed", task=task.name, error=str(e))
            result = GCResult(task_name=task.name)
            result.add_error(f"Task failed: {e}")
            return result

    async def start(self) -> None:
        if self._running:
            self._log.warning("gc.scheduler.already_running")
            return

        self._running = True
        self._task = asyncio.create_task(
            self._background_loop(), name=f"gc-{self._name}"
        )
        self._log.info("gc.scheduler.started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._log.info("gc.scheduler.stopped")

    async def _background_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            try:
                await self.run_once()
            except Exception as e:
                self._log.exception("gc.scheduler.cycle_error", error=str(e))
