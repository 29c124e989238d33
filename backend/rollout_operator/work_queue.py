"""
Work queue feeding application keys to the reconciler.

A key is never processed by two workers at once: an enqueue that arrives while
its key is being reconciled marks it dirty, and it is queued again once the
running pass finishes. Duplicate enqueues of a waiting key collapse into one.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .kube_types import AppKey

logger = logging.getLogger(__name__)


class ReconcileQueue:
    """Deduplicating delayed queue with a fixed pool of async workers."""

    def __init__(
        self,
        reconcile: Callable[[AppKey], Awaitable],
        list_keys: Optional[Callable[[], Awaitable[List[AppKey]]]] = None,
        workers: int = 4,
        resync_period: float = 300.0,
        error_backoff_base: float = 1.0,
        error_backoff_max: float = 120.0,
    ):
        """
        Args:
            reconcile: Coroutine run per key; its result's ``requeue_after`` schedules the next pass
            list_keys: Coroutine listing every known key, polled each resync period
            workers: Number of keys reconciled in parallel
            resync_period: Seconds between full re-lists (0 disables resync)
            error_backoff_base: First delay after a failed pass
            error_backoff_max: Cap for repeated failures of one key
        """
        self.reconcile = reconcile
        self.list_keys = list_keys
        self.workers = max(workers, 1)
        self.resync_period = resync_period
        self.error_backoff_base = error_backoff_base
        self.error_backoff_max = error_backoff_max

        self._queue: "asyncio.Queue[AppKey]" = asyncio.Queue()
        self._queued: Set[AppKey] = set()
        self._processing: Set[AppKey] = set()
        self._dirty: Set[AppKey] = set()
        self._timers: Dict[AppKey, asyncio.TimerHandle] = {}
        self._failures: Dict[AppKey, int] = {}
        self._tasks: List[asyncio.Task] = []

    def __len__(self) -> int:
        return len(self._queued)

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def enqueue(self, key: AppKey, delay: float = 0.0) -> None:
        """Schedule a reconciliation of ``key``, immediately or after ``delay`` seconds."""
        if delay <= 0:
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            self._add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        timer = self._timers.get(key)
        if timer is not None:
            if timer.when() <= when:
                return
            timer.cancel()
        self._timers[key] = loop.call_at(when, self._fire, key)

    def _fire(self, key: AppKey) -> None:
        self._timers.pop(key, None)
        self._add(key)

    def _add(self, key: AppKey) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    async def start(self) -> None:
        if self._tasks:
            return
        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}"))
        if self.list_keys is not None and self.resync_period > 0:
            self._tasks.append(asyncio.create_task(self._resync_loop(), name="reconcile-resync"))
        logger.info(f"🚀 Reconcile queue started with {self.workers} workers")

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Reconcile queue stopped")

    async def join(self) -> None:
        """Wait until every queued key has been processed."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            self._processing.add(key)
            try:
                await self._process(key)
            finally:
                self._processing.discard(key)
                self._queue.task_done()
                if key in self._dirty:
                    self._dirty.discard(key)
                    self._add(key)

    async def _process(self, key: AppKey) -> None:
        try:
            result = await self.reconcile(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = self.backoff(failures)
            logger.error(f"Reconcile of {key} failed (attempt {failures}), retrying in {delay:.1f}s: {e}", exc_info=True)
            self.enqueue(key, delay)
            return

        self._failures.pop(key, None)
        requeue_after = getattr(result, "requeue_after", None)
        if requeue_after is not None:
            logger.debug(f"Requeueing {key} in {requeue_after:.1f}s")
            self.enqueue(key, requeue_after)

    def backoff(self, failures: int) -> float:
        return min(self.error_backoff_max, self.error_backoff_base * (2 ** max(failures - 1, 0)))

    async def _resync_loop(self) -> None:
        while True:
            try:
                keys = await self.list_keys()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Failed to list applications for resync: {e}", exc_info=True)
            else:
                logger.debug(f"Resync queued {len(keys)} applications")
                for key in keys:
                    self.enqueue(key)
            await asyncio.sleep(self.resync_period)
