from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Callable, Hashable
from typing import Any, Protocol

from kubernetes.client import CoreV1Api

from basecontroller.src.cache import Informer, KeyFuncError, meta_namespace_key
from basecontroller.src.config import ControllerConfig
from basecontroller.src.kube import build_pod_source
from basecontroller.src.metrics import METRICS
from basecontroller.src.workqueue import (
    RateLimitingQueue,
    WorkQueue,
    default_controller_rate_limiter,
)


class CacheSyncError(RuntimeError):
    """Raised when the local cache did not sync before the stop signal or timeout."""


class Handler(Protocol):
    """Business logic invoked by the workers.

    Both methods may be called more than once for the same logical change and
    must not block indefinitely.
    """

    def object_created_or_updated(self, obj: Any) -> None: ...

    def object_deleted(self, key: str) -> None: ...


class QueueingEventHandler:
    """Turn cache notifications into work queue keys.

    Deletions are queued by key as well; by the time a worker picks the key up
    the object is gone from the cache, which is how the worker recognizes a
    deletion.
    """

    def __init__(
        self,
        queue: WorkQueue,
        key_fn: Callable[[Any], str] = meta_namespace_key,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.key_fn = key_fn
        self.logger = logger or logging.getLogger(__name__)

    def _enqueue(self, obj: Any) -> None:
        try:
            key = self.key_fn(obj)
        except KeyFuncError:
            self.logger.warning("Could not compute key for object; skipping event", exc_info=True)
            return
        self.queue.add(key)

    def on_add(self, obj: Any) -> None:
        self._enqueue(obj)

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        self._enqueue(new_obj)

    def on_delete(self, obj: Any) -> None:
        self._enqueue(obj)


def wait_for_cache_sync(
    stop_event: threading.Event,
    *informers: Informer,
    timeout: float | None = None,
    poll_interval: float = 0.1,
) -> bool:
    """Block until every informer has synced.

    Returns ``False`` as soon as ``stop_event`` is set or ``timeout`` elapses
    first.  Waiting happens on each informer's sync event, checking for stop
    every ``poll_interval`` seconds.
    """
    deadline = time.monotonic() + timeout if timeout else None
    for informer in informers:
        while not informer.wait_for_sync(timeout=poll_interval):
            if stop_event.is_set():
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return False
    return all(informer.has_synced() for informer in informers)


class Controller:
    """Level-triggered reconciliation loop over an informer and a work queue.

    Lifecycle of :meth:`run`:

    1. Start the informer in a background thread.
    2. Wait for the cache to sync; abort with :class:`CacheSyncError` if the
       stop signal or the sync timeout comes first.
    3. Start ``workers`` worker threads and set :attr:`ready`.
    4. On stop, shut the queue down so every worker blocked in ``get``
       returns, then join the threads.

    Each worker pulls a key, looks it up in the cache and calls the handler:
    a missing object means the key was deleted.  Lookup and handler failures
    are re-queued with rate limiting until the key has been requeued
    ``max_retries`` times, after which it is forgotten and logged.  The key is
    always released with ``done`` so a failing handler cannot keep it claimed.
    """

    def __init__(
        self,
        queue: RateLimitingQueue,
        informer: Informer,
        handler: Handler,
        *,
        max_retries: int = 5,
        workers: int = 1,
        cache_sync_timeout: float = 0.0,
        sync_poll_interval: float = 0.1,
        task_restart_delay: float = 1.0,
        shutdown_timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if workers < 1:
            raise ValueError("workers must be >= 1")

        self.queue = queue
        self.informer = informer
        self.handler = handler
        self.max_retries = max_retries
        self.workers = workers
        self.cache_sync_timeout = cache_sync_timeout
        self.sync_poll_interval = sync_poll_interval
        self.task_restart_delay = task_restart_delay
        self.shutdown_timeout = shutdown_timeout
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._internal_stop = threading.Event()

    def has_synced(self) -> bool:
        return self.informer.has_synced()

    def run(self, stop_event: threading.Event) -> None:
        self.ready.clear()
        self._internal_stop.clear()

        informer_thread = threading.Thread(
            target=self._run_guarded,
            args=("informer", functools.partial(self.informer.run, self._internal_stop)),
            name="informer",
            daemon=True,
        )
        worker_threads: list[threading.Thread] = []

        informer_thread.start()
        self.logger.info("Controller started with %d worker(s)", self.workers)
        try:
            if not wait_for_cache_sync(
                stop_event,
                self.informer,
                timeout=self.cache_sync_timeout or None,
                poll_interval=self.sync_poll_interval,
            ):
                self.logger.error("Error syncing cache; controller will not start workers")
                raise CacheSyncError("error syncing cache")

            self.logger.info("Controller synced and listening for changes")
            for index in range(self.workers):
                thread = threading.Thread(
                    target=self._run_guarded,
                    args=(f"worker-{index}", self.run_worker),
                    name=f"worker-{index}",
                    daemon=True,
                )
                worker_threads.append(thread)
                thread.start()

            self.ready.set()
            stop_event.wait()
            self.logger.info("Stop signal received, shutting down work queue")
        finally:
            self.ready.clear()
            self._internal_stop.set()
            self.queue.shut_down()
            self.informer.request_stop()
            self._join(worker_threads + [informer_thread])
            self.logger.info("Controller stopped")

    def _join(self, threads: list[threading.Thread]) -> None:
        deadline = time.monotonic() + self.shutdown_timeout
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                self.logger.error(
                    "Thread %s did not stop within %ss", thread.name, self.shutdown_timeout
                )

    def _run_guarded(self, name: str, task: Callable[[], None]) -> None:
        """Fault barrier for one background thread: log crashes and restart the task."""
        while not self._internal_stop.is_set():
            try:
                task()
                return
            except Exception:
                self.logger.exception(
                    "Task %s crashed; restarting in %.1fs", name, self.task_restart_delay
                )
            self._internal_stop.wait(timeout=self.task_restart_delay)

    def run_worker(self) -> None:
        while self.process_next_item():
            pass

    def process_next_item(self) -> bool:
        """Process one key; return ``False`` once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False

        started = time.monotonic()
        try:
            self._reconcile(key)
        finally:
            self.queue.done(key)
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
        return True

    def _reconcile(self, key: Hashable) -> None:
        try:
            obj, exists = self.informer.store.get_by_key(key)
        except Exception as exc:
            self.logger.error("Error retrieving by key %r: %s", key, exc)
            self._retry_or_forget(key)
            return

        try:
            if exists:
                self.handler.object_created_or_updated(obj)
                outcome = "created_or_updated"
            else:
                self.handler.object_deleted(key)
                outcome = "deleted"
        except Exception:
            self.logger.exception("Handler failed for key %r", key)
            self._retry_or_forget(key)
            return

        self.queue.forget(key)
        METRICS.reconciles_total.labels(result=outcome).inc()

    def _retry_or_forget(self, key: Hashable) -> None:
        METRICS.reconciles_total.labels(result="error").inc()
        requeues = self.queue.num_requeues(key)
        if requeues < self.max_retries:
            self.logger.info("Requeueing key %r (attempt %d)", key, requeues + 1)
            self.queue.add_rate_limited(key)
            return

        self.logger.error("Max retries exceeded for key: %s", key)
        METRICS.dropped_keys_total.inc()
        self.queue.forget(key)


def build_controller(
    config: ControllerConfig,
    core_api: CoreV1Api,
    handler: Handler,
) -> Controller:
    """Wire a Pod informer, a rate-limited queue and ``handler`` into a :class:`Controller`."""
    source = build_pod_source(
        core_api,
        namespace=config.namespace,
        timeout_seconds=config.watch_timeout_seconds,
    )
    informer = Informer(source, resync_period=config.resync_period_seconds)
    queue = RateLimitingQueue(
        default_controller_rate_limiter(
            base_delay=config.rate_limit_base_delay_seconds,
            max_delay=config.rate_limit_max_delay_seconds,
            qps=config.rate_limit_qps,
            burst=config.rate_limit_burst,
        ),
        name="pods",
    )
    informer.add_event_handler(QueueingEventHandler(queue))

    return Controller(
        queue=queue,
        informer=informer,
        handler=handler,
        max_retries=config.max_retries,
        workers=config.workers,
        cache_sync_timeout=config.cache_sync_timeout_seconds,
    )
