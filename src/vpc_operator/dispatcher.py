"""Event-driven dispatcher for reconciliation passes.

The dispatcher decides WHEN a ClusterRequest is reconciled; the reconciler
decides WHAT happens. It:
1. Collects keys from a watch stream and a periodic full resync
2. Serialises passes per key (at most one in flight for any object)
3. Runs passes for different keys concurrently on worker tasks
4. Interprets outcomes: done, requeue after a delay, or error with backoff

Passes are synchronous and run in threads via asyncio.to_thread so a slow
cloud call never blocks the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading

from .config import MAX_BACKOFF_SECONDS, RETRY_BACKOFF_BASE_SECONDS, OperatorConfig
from .models import ObjectKey
from .reconciler import ClusterReconciler, OutcomeKind, ReconcileOutcome
from .store import ClusterStore, PersistError

logger = logging.getLogger(__name__)

# Pause before re-establishing a failed watch stream
WATCH_RETRY_SECONDS = 5


def backoff_seconds(failures: int) -> float:
    """Exponential backoff for the given number of consecutive failures."""
    if failures <= 0:
        return 0.0
    return float(min(RETRY_BACKOFF_BASE_SECONDS * 2 ** (failures - 1), MAX_BACKOFF_SECONDS))


class Dispatcher:
    """Work queue that feeds ClusterRequest keys to the reconciler.

    Keys live in at most one of three places: queued (waiting for a worker),
    processing (a pass is running), or dirty (changed while processing and
    re-queued once the running pass finishes).
    """

    def __init__(
        self,
        reconciler: ClusterReconciler,
        store: ClusterStore,
        config: OperatorConfig,
    ) -> None:
        self._reconciler = reconciler
        self._store = store
        self._config = config

        self._queue: asyncio.Queue[ObjectKey] = asyncio.Queue()
        self._queued: set[ObjectKey] = set()
        self._processing: set[ObjectKey] = set()
        self._dirty: set[ObjectKey] = set()

        self._failures: dict[ObjectKey, int] = {}
        self._timers: dict[ObjectKey, asyncio.TimerHandle] = {}

        self._shutdown_event = asyncio.Event()
        self._stop_watch = threading.Event()

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def failure_count(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    def is_scheduled(self, key: ObjectKey) -> bool:
        """True if a delayed requeue is pending for key."""
        return key in self._timers

    def enqueue(self, key: ObjectKey) -> None:
        """Queue a key for reconciliation, collapsing duplicates."""
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def enqueue_after(self, key: ObjectKey, delay: float) -> None:
        """Queue a key once delay seconds have elapsed."""
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()

        if delay <= 0:
            self.enqueue(key)
            return

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire_timer, key)

    def _fire_timer(self, key: ObjectKey) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    def handle_outcome(self, key: ObjectKey, outcome: ReconcileOutcome) -> None:
        """Schedule the next pass for key according to the outcome."""
        match outcome.kind:
            case OutcomeKind.DONE:
                self._failures.pop(key, None)

            case OutcomeKind.REQUEUE:
                self._failures.pop(key, None)
                self.enqueue_after(key, outcome.requeue_after or 0.0)

            case OutcomeKind.ERROR:
                failures = self._failures.get(key, 0) + 1
                self._failures[key] = failures
                delay = backoff_seconds(failures)
                logger.warning(
                    "Pass failed, retrying with backoff",
                    extra={
                        "key": str(key),
                        "consecutive_failures": failures,
                        "retry_in_seconds": delay,
                        "error": str(outcome.error),
                    },
                )
                self.enqueue_after(key, delay)

    async def process_next(self) -> ReconcileOutcome:
        """Take one key off the queue, run a pass for it, handle the outcome."""
        key = await self._queue.get()
        self._queued.discard(key)
        self._processing.add(key)
        try:
            outcome = await asyncio.to_thread(self._reconciler.reconcile, key)
            self.handle_outcome(key, outcome)
            return outcome
        finally:
            self._processing.discard(key)
            self._queue.task_done()
            if key in self._dirty:
                self._dirty.discard(key)
                self.enqueue(key)

    async def _worker(self, worker_id: int) -> None:
        logger.debug("Worker started", extra={"worker_id": worker_id})
        while not self._shutdown_event.is_set():
            try:
                await self.process_next()
            except Exception:
                # reconcile() reports errors in its outcome; this is a dispatcher bug
                logger.exception("Worker failed to process key", extra={"worker_id": worker_id})

    async def resync(self) -> int:
        """Enqueue every known ClusterRequest. Returns the number of keys."""
        try:
            keys = await asyncio.to_thread(self._store.list_keys)
        except PersistError as e:
            logger.warning("Resync listing failed", extra={"error": str(e)})
            return 0

        for key in keys:
            self.enqueue(key)
        logger.info("Resync enqueued objects", extra={"count": len(keys)})
        return len(keys)

    async def _resync_loop(self) -> None:
        while not self._shutdown_event.is_set():
            await self.resync()
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.resync_interval_seconds,
                )
            except TimeoutError:
                # Normal timeout, continue to next resync
                pass

    def _watch_forever(self, loop: asyncio.AbstractEventLoop) -> None:
        """Feed watch events into the queue. Runs on a daemon thread."""
        while not self._stop_watch.is_set():
            try:
                for key in self._store.watch_keys():
                    if self._stop_watch.is_set():
                        return
                    loop.call_soon_threadsafe(self.enqueue, key)
            except Exception as e:
                logger.warning(
                    "Watch stream failed, re-establishing",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
                self._stop_watch.wait(WATCH_RETRY_SECONDS)

    async def run(self) -> None:
        """Run workers, resync and watch until shutdown."""
        logger.info(
            "Starting dispatcher",
            extra={
                "workers": self._config.workers,
                "resync_interval_seconds": self._config.resync_interval_seconds,
                "watch": self._config.enable_watch,
                "namespace": self._config.watch_namespace or "*",
            },
        )

        tasks = [
            asyncio.create_task(self._worker(i), name=f"worker-{i}")
            for i in range(self._config.workers)
        ]
        tasks.append(asyncio.create_task(self._resync_loop(), name="resync"))

        if self._config.enable_watch:
            watch_thread = threading.Thread(
                target=self._watch_forever,
                args=(asyncio.get_running_loop(),),
                name="watch",
                daemon=True,
            )
            watch_thread.start()

        await self._shutdown_event.wait()

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Dispatcher shutdown complete")

    def shutdown(self) -> None:
        """Signal the dispatcher to stop."""
        logger.info("Shutdown requested")
        self._stop_watch.set()
        self._shutdown_event.set()
