"""
Operator Controller - work queue and worker pool.

Similar to Kubernetes controllers: resource keys are fed into a work queue,
a bounded pool of workers drains it, and each worker runs one reconciliation
to completion before taking the next key. A key is never processed by two
workers at once and failed keys are requeued after their backoff delay.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Set

from backoff import BackoffTracker
from config import ControllerConfig
from events import EventRecorder
from kube import ClusterClient
from reconcilers.base import Reconciler, ReconcilerContext, ReconcileResult
from resources import ResourceKey

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    De-duplicating FIFO of resource keys.

    A key that is already waiting is not added twice. A key added while it
    is being processed is held back and re-queued once processing is done,
    which is what keeps a key on at most one worker at a time.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[ResourceKey] = set()
        self._processing: Set[ResourceKey] = set()

    def add(self, key: ResourceKey) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    async def get(self) -> ResourceKey:
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: ResourceKey) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    def is_processing(self, key: ResourceKey) -> bool:
        return key in self._processing

    def __len__(self) -> int:
        return self._queue.qsize()


class Controller:
    """
    Main controller that dispatches keys to a reconciler.

    Owns the work queue, the per-key requeue timers, the backoff tracker and
    the shutdown signal, and passes the shared pieces to the reconciler
    through a ReconcilerContext.
    """

    def __init__(
        self,
        client: ClusterClient,
        reconciler: Reconciler,
        recorder: Optional[EventRecorder] = None,
        config: Optional[ControllerConfig] = None,
        backoff: Optional[BackoffTracker] = None,
    ):
        self.client = client
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.backoff = backoff or BackoffTracker(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
        )
        self.queue = WorkQueue()
        self.running = False

        self._shutdown_event = asyncio.Event()
        self._timers: Dict[ResourceKey, asyncio.TimerHandle] = {}
        self._workers: List[asyncio.Task] = []
        self.ctx = ReconcilerContext(
            client=client,
            recorder=recorder or EventRecorder(client),
            backoff=self.backoff,
            shutdown_event=self._shutdown_event,
            conflict_retry_steps=self.config.conflict_retry_steps,
        )

    def enqueue(self, key: ResourceKey) -> None:
        """Queue key for reconciliation. Entry point for watch feeds."""
        if self._shutdown_event.is_set():
            return
        self.queue.add(key)

    def enqueue_after(self, key: ResourceKey, delay: float) -> None:
        """
        Queue key once delay seconds have passed.

        Replaces any earlier pending schedule for the same key.
        """
        if self._shutdown_event.is_set():
            return
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire_timer, key)

    def _fire_timer(self, key: ResourceKey) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    def has_pending_requeue(self, key: ResourceKey) -> bool:
        return key in self._timers

    def start_workers(self) -> None:
        """Spawn the worker pool without blocking."""
        self.running = True
        self._shutdown_event.clear()
        for i in range(self.max_concurrent_reconciles):
            self._workers.append(asyncio.create_task(self._worker(i)))

    async def start(self):
        """Start the worker pool and the resync loop; returns on stop()."""
        logger.info(
            f"Starting {self.reconciler.name} controller with "
            f"{self.max_concurrent_reconciles} workers"
        )
        self.start_workers()
        resync_task = asyncio.create_task(self._resync_loop())

        try:
            await self._shutdown_event.wait()
        finally:
            resync_task.cancel()
            await asyncio.gather(resync_task, return_exceptions=True)

    async def stop(self):
        """Stop the controller; in-flight reconciliations are cancelled."""
        logger.info(f"Stopping {self.reconciler.name} controller")
        self.running = False
        self._shutdown_event.set()

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        for task in self._workers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

    async def _resync_loop(self):
        """Periodically enqueue every existing request."""
        while self.running:
            try:
                requests = await self.client.list_unregister_requests()
                queued = 0
                for request in requests:
                    if self.has_pending_requeue(request.key):
                        continue
                    self.enqueue(request.key)
                    queued += 1
                if queued:
                    logger.info(f"Resync queued {queued} requests")
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)

            await asyncio.sleep(self.config.resync_interval)

    async def _worker(self, worker_id: int):
        while True:
            key = await self.queue.get()
            try:
                await self._process(key)
            finally:
                self.queue.done(key)

    async def _process(self, key: ResourceKey) -> Optional[ReconcileResult]:
        """Reconcile one key and act on the outcome."""
        start_time = time.monotonic()
        try:
            result = await self.reconciler.reconcile(key, self.ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            delay = self.backoff.get_or_init(key)
            self.backoff.double(key)
            logger.error(
                f"Error reconciling {key}: {e}. Requeue after {delay}s",
                exc_info=True,
            )
            self.enqueue_after(key, delay)
            return None

        duration = time.monotonic() - start_time
        if result.requeue_after is not None:
            logger.info(
                f"Reconciled {key} in {duration:.2f}s: {result.message}. "
                f"Requeue after {result.requeue_after}s"
            )
            self.enqueue_after(key, result.requeue_after)
        else:
            logger.debug(f"Reconciled {key} in {duration:.2f}s: {result.message}")
        return result
