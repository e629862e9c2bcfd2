from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Optional

from sentry_sdk import capture_exception

from ..bus import EventBus, TOPIC_INTENT, TOPIC_SIGNAL
from ..config import settings
from ..utils.logging import get_logger
from ..utils.metrics import SWEEP_LATENCY
from ..utils.retry import with_retry
from .feeds import HoldingsFeed
from .governor import ControlGovernor
from .models import utcnow
from .reconciliation import IntentReconciler, ReconcileReport
from .service import ExitService, PositionOutcome

log = get_logger(__name__)


def _report_task_error(task: asyncio.Task) -> None:
    """Send unhandled task exceptions to Sentry."""
    try:
        exc = task.exception()
    except asyncio.CancelledError:  # pragma: no cover - task management
        return
    if exc:
        log.exception("task_error", exc_info=exc)
        capture_exception(exc)


class TickScheduler:
    """Drive the exit service at a fixed cadence.

    Every tick takes one governor snapshot and one holdings snapshot, then
    evaluates the open positions concurrently in worker threads, at most
    ``max_workers`` at a time.  A second loop runs the intent reconciler.
    """

    def __init__(
        self,
        service: ExitService,
        holdings: HoldingsFeed,
        governor: ControlGovernor,
        *,
        reconciler: IntentReconciler | None = None,
        bus: EventBus | None = None,
        tick_interval_s: float | None = None,
        reconcile_interval_s: float | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.service = service
        self.holdings = holdings
        self.governor = governor
        self.reconciler = reconciler
        self.bus = bus or EventBus()
        self.tick_interval_s = settings.tick_interval_s if tick_interval_s is None else tick_interval_s
        self.reconcile_interval_s = (
            settings.reconcile_interval_s if reconcile_interval_s is None else reconcile_interval_s
        )
        self.max_workers = max(1, settings.max_workers if max_workers is None else max_workers)
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.cycles = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    # ------------------------------------------------------------------
    async def run_once(self, now: Optional[datetime] = None) -> list[PositionOutcome]:
        """Run a single sweep over every open position."""
        start = time.perf_counter()
        try:
            gate = await with_retry(self.governor.snapshot, retries=2, base_delay=0.1)
            positions = await with_retry(self.holdings.open_positions, retries=2, base_delay=0.1)
        except Exception as exc:
            log.error("sweep skipped, snapshot failed: %s", exc)
            capture_exception(exc)
            return []

        live = [p for p in positions if p.qty > 0]
        try:
            await asyncio.to_thread(
                self.service.state_store.archive_missing, [p.position_id for p in live]
            )
        except Exception as exc:
            log.error("archiving closed positions failed: %s", exc)
            capture_exception(exc)

        sem = asyncio.Semaphore(self.max_workers)

        async def _one(position):
            async with sem:
                return await asyncio.to_thread(
                    self.service.evaluate_position, position, gate, now or utcnow()
                )

        results = await asyncio.gather(*(_one(p) for p in live), return_exceptions=True)

        outcomes: list[PositionOutcome] = []
        for position, res in zip(live, results):
            if isinstance(res, BaseException):
                log.error(
                    "evaluation of %s failed", position.position_id, exc_info=res
                )
                capture_exception(res)
                continue
            outcomes.append(res)
            if res.intent is not None:
                await self.bus.publish(TOPIC_INTENT, res.intent)
            if res.signal is not None:
                await self.bus.publish(TOPIC_SIGNAL, res.signal)

        self.cycles += 1
        elapsed = time.perf_counter() - start
        SWEEP_LATENCY.observe(elapsed)
        log.debug(
            "sweep %d (%s): %d positions in %.3fs", self.cycles, gate.mode, len(live), elapsed
        )
        return outcomes

    async def reconcile_once(self) -> ReconcileReport | None:
        if self.reconciler is None:
            return None
        return await asyncio.to_thread(self.reconciler.reconcile)

    # ------------------------------------------------------------------
    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            pass

    async def _tick_worker(self) -> None:
        while not self._stop.is_set():
            started = time.monotonic()
            await self.run_once()
            await self._sleep(self.tick_interval_s - (time.monotonic() - started))

    async def _reconcile_worker(self) -> None:
        while not self._stop.is_set():
            await self._sleep(self.reconcile_interval_s)
            if self._stop.is_set():
                break
            try:
                await self.reconcile_once()
            except Exception as exc:
                log.warning("reconciliation failed: %s", exc)
                capture_exception(exc)

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        loaded = await asyncio.to_thread(self.service.state_store.load)
        log.info(
            "exit scheduler starting: %d states, tick %.1fs, %d workers",
            loaded,
            self.tick_interval_s,
            self.max_workers,
        )
        self._tasks = []
        workers = [self._tick_worker]
        if self.reconciler is not None:
            workers.append(self._reconcile_worker)
        for worker in workers:
            task = asyncio.create_task(worker())
            task.add_done_callback(_report_task_error)
            self._tasks.append(task)

    async def stop(self) -> None:
        self._stop.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        log.info("exit scheduler stopped after %d sweeps", self.cycles)

    async def run(self) -> None:
        """Start and block until :meth:`stop` is called."""
        await self.start()
        await self._stop.wait()
        await asyncio.gather(*self._tasks, return_exceptions=True)


__all__ = ["TickScheduler"]
