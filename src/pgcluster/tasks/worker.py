"""Worker pool that executes outbox events.

Usage::

    dispatcher = TaskDispatcher(OutboxStore(db), max_workers=4)
    dispatcher.register(EventKind.CLUSTER_CREATED, orchestrator.handle_cluster_created)
    dispatcher.start()      # background polling thread
    ...
    dispatcher.stop()

Handlers receive the :class:`OutboxEvent`. A handler that raises marks its
event ``failed``; the pool and the polling loop keep running.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait

from pgcluster.models import EventKind, OutboxEvent
from pgcluster.tasks.outbox import OutboxStore

logger = logging.getLogger(__name__)

Handler = Callable[[OutboxEvent], None]


class TaskDispatcherError(Exception):
    """Raised when the dispatcher is misconfigured."""


class TaskDispatcher:
    """Poll the outbox and hand each event to a worker thread."""

    def __init__(
        self,
        outbox: OutboxStore,
        max_workers: int = 4,
        poll_interval: float = 1.0,
        batch_size: int = 10,
    ) -> None:
        if max_workers < 1:
            raise TaskDispatcherError("max_workers must be at least 1")
        self._outbox = outbox
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._handlers: dict[EventKind, Handler] = {}
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pgcluster-task")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._inflight: set[Future[None]] = set()
        self._lock = threading.Lock()
        self._startup_hooks: list[Callable[[], None]] = []

    def register(self, kind: EventKind, handler: Handler) -> None:
        self._handlers[kind] = handler

    def on_start(self, hook: Callable[[], None]) -> None:
        """Run *hook* in :meth:`start`, after stale events are requeued and before polling begins."""
        self._startup_hooks.append(hook)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll_once(self) -> list[Future[None]]:
        """Claim pending events and submit them to the pool."""
        futures: list[Future[None]] = []
        for event in self._outbox.claim_batch(self._batch_size):
            future = self._pool.submit(self._run, event)
            with self._lock:
                self._inflight.add(future)
            future.add_done_callback(self._forget)
            futures.append(future)
        return futures

    def drain(self, timeout: float | None = None) -> None:
        """Poll until the outbox is empty and every submitted task has finished."""
        while True:
            submitted = self.poll_once()
            with self._lock:
                pending = set(self._inflight)
            if not submitted and not pending:
                return
            wait(pending | set(submitted), timeout=timeout)

    def start(self) -> None:
        """Requeue events orphaned by a previous process, run startup hooks and start polling."""
        if self._thread is not None:
            return
        requeued = self._outbox.requeue_stale()
        if requeued:
            logger.warning("Requeued %d outbox events left dispatched by a previous run", requeued)
        for hook in self._startup_hooks:
            hook()
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="pgcluster-outbox", daemon=True)
        self._thread.start()

    def stop(self, wait_for_tasks: bool = True) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._poll_interval * 5)
            self._thread = None
        self._pool.shutdown(wait=wait_for_tasks)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Outbox poll failed")
            self._stop.wait(self._poll_interval)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _run(self, event: OutboxEvent) -> None:
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.error("No handler registered for outbox event %s (%s)", event.event_id, event.kind)
            self._outbox.mark_failed(event.event_id, f"no handler for {event.kind}")
            return

        logger.debug("Dispatching %s for %s (event %d)", event.kind, event.aggregate_id, event.event_id)
        try:
            handler(event)
        except Exception as exc:
            logger.exception("Task %s for %s failed", event.kind, event.aggregate_id)
            try:
                self._outbox.mark_failed(event.event_id, str(exc) or type(exc).__name__)
            except Exception:
                logger.exception("Could not record failure of outbox event %d", event.event_id)
            return
        self._outbox.mark_done(event.event_id)

    def _forget(self, future: Future[None]) -> None:
        with self._lock:
            self._inflight.discard(future)
