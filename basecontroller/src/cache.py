from __future__ import annotations

import logging
import random
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from basecontroller.src.metrics import METRICS


class CacheError(RuntimeError):
    """Raised when the local cache cannot answer a lookup (as opposed to not-found)."""


class KeyFuncError(ValueError):
    """Raised when no object key can be derived from an object."""


class ResourceExpiredError(RuntimeError):
    """Raised by an event source when its watch position is gone and a re-list is needed."""


class EventType(StrEnum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A single change notification carrying the object key and the object."""

    type: EventType
    key: str
    obj: Any


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Delete marker for an object that vanished while the watch was disconnected.

    The informer only learns about such deletions from a re-list, so ``obj`` is
    the last state it had cached, which may be stale.
    """

    key: str
    obj: Any


class EventSource(Protocol):
    """Initial listing plus an ordered change stream for one resource type."""

    def list(self) -> list[tuple[str, Any]]: ...

    def watch(self) -> Iterable[WatchEvent]: ...

    def stop(self) -> None: ...


class ResourceEventHandler(Protocol):
    def on_add(self, obj: Any) -> None: ...

    def on_update(self, old_obj: Any, new_obj: Any) -> None: ...

    def on_delete(self, obj: Any) -> None: ...


def _field(value: Any, name: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(name)
    return getattr(value, name, None)


def meta_namespace_key(obj: Any) -> str:
    """Return ``<namespace>/<name>``, or ``<name>`` for cluster-scoped objects.

    Accepts Kubernetes client models, plain dicts as returned by the dynamic
    client, and :class:`DeletedFinalStateUnknown` tombstones.
    """
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key

    metadata = _field(obj, "metadata")
    if metadata is None:
        raise KeyFuncError(f"object has no metadata: {obj!r}")

    name = _field(metadata, "name")
    if not name:
        raise KeyFuncError("object metadata has no name")

    namespace = _field(metadata, "namespace")
    if namespace:
        return f"{namespace}/{name}"
    return str(name)


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a key produced by :func:`meta_namespace_key` into ``(namespace, name)``."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise KeyFuncError(f"unexpected key format: {key!r}")


class ThreadSafeStore:
    """Key to object map guarded by a re-entrant lock."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.RLock()

    def add(self, key: str, obj: Any) -> None:
        with self._lock:
            self._items[key] = obj

    update = add

    def delete(self, key: str) -> Any:
        with self._lock:
            return self._items.pop(key, None)

    def get_by_key(self, key: str) -> tuple[Any, bool]:
        """Return ``(obj, exists)``; raise :class:`CacheError` on an unusable key."""
        with self._lock:
            try:
                return self._items[key], True
            except KeyError:
                return None, False
            except TypeError as exc:
                raise CacheError(f"invalid cache key {key!r}") from exc

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def list_keys(self) -> list[str]:
        with self._lock:
            return list(self._items.keys())

    def replace(self, items: Mapping[str, Any]) -> None:
        with self._lock:
            self._items = dict(items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class Informer:
    """Keeps a :class:`ThreadSafeStore` in sync with an :class:`EventSource`.

    ``run`` is the background task: list, replace the store, mark the cache
    synced, then apply watch events until stopped.  Every store mutation is
    followed by a notification to the registered handlers.

    Recovery rules:
        - :class:`ResourceExpiredError` triggers an immediate re-list.
        - Any other source failure is logged and retried with jittered
          exponential backoff (1 s doubling to a 30 s cap) before re-listing.
        - A re-list is diffed against the store, so objects deleted while the
          watch was down are reported with a :class:`DeletedFinalStateUnknown`.
        - Handler exceptions are logged per handler and never stop the loop.

    The synced flag goes from unset to set once per run and is never cleared.
    """

    def __init__(
        self,
        source: EventSource,
        *,
        resync_period: float = 0.0,
        store: ThreadSafeStore | None = None,
        max_backoff_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.source = source
        self.resync_period = resync_period
        self.store = store if store is not None else ThreadSafeStore()
        self.max_backoff_seconds = max_backoff_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: list[ResourceEventHandler] = []
        self._handlers_lock = threading.Lock()
        self._synced = threading.Event()

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        """Register ``handler``; if the cache is already synced, replay its contents as adds."""
        with self._handlers_lock:
            self._handlers.append(handler)
        if self._synced.is_set():
            for obj in self.store.list():
                self._notify(handler, "on_add", obj)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_sync(self, timeout: float | None = None) -> bool:
        return self._synced.wait(timeout=timeout)

    def request_stop(self) -> None:
        """Interrupt an open watch stream so ``run`` notices the stop event promptly."""
        self.source.stop()

    def run(self, stop_event: threading.Event) -> None:
        self.logger.info("Informer starting")
        resync_thread: threading.Thread | None = None
        if self.resync_period > 0:
            resync_thread = threading.Thread(
                target=self._resync_loop,
                args=(stop_event,),
                name="informer-resync",
                daemon=True,
            )
            resync_thread.start()

        backoff_seconds = 1.0
        while not stop_event.is_set():
            try:
                self._list_and_watch(stop_event)
                backoff_seconds = 1.0
            except ResourceExpiredError:
                self.logger.warning("Watch resource version expired, re-listing")
            except Exception:
                self.logger.exception("Event source failed; re-listing after backoff")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, self.max_backoff_seconds)

        if resync_thread is not None:
            resync_thread.join(timeout=1.0)
        self.logger.info("Informer stopped")

    def _list_and_watch(self, stop_event: threading.Event) -> None:
        items = self.source.list()
        METRICS.relists_total.inc()
        self._replace(items)

        if not self._synced.is_set():
            self._synced.set()
            METRICS.cache_synced.set(1)
            self.logger.info("Cache synced with %d object(s)", len(self.store))

        while not stop_event.is_set():
            for event in self.source.watch():
                if stop_event.is_set():
                    return
                self._apply(event)

    def _replace(self, items: list[tuple[str, Any]]) -> None:
        listed = dict(items)
        for key in self.store.list_keys():
            if key in listed:
                continue
            stale = self.store.delete(key)
            self._dispatch("on_delete", DeletedFinalStateUnknown(key=key, obj=stale))

        for key, obj in listed.items():
            old_obj, exists = self.store.get_by_key(key)
            self.store.add(key, obj)
            if exists:
                self._dispatch("on_update", old_obj, obj)
            else:
                self._dispatch("on_add", obj)
        METRICS.cache_objects.set(len(self.store))

    def _apply(self, event: WatchEvent) -> None:
        if event.type is EventType.DELETED:
            self.store.delete(event.key)
            self._dispatch("on_delete", event.obj)
        else:
            # A repeated ADDED for a known key is an update; delivery is at-least-once.
            old_obj, exists = self.store.get_by_key(event.key)
            self.store.update(event.key, event.obj)
            if exists:
                self._dispatch("on_update", old_obj, event.obj)
            else:
                self._dispatch("on_add", event.obj)
        METRICS.cache_objects.set(len(self.store))

    def _resync_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(timeout=self.resync_period):
            if not self._synced.is_set():
                continue
            objects = self.store.list()
            self.logger.debug("Resyncing %d cached object(s)", len(objects))
            for obj in objects:
                self._dispatch("on_update", obj, obj)

    def _dispatch(self, method: str, *args: Any) -> None:
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            self._notify(handler, method, *args)

    def _notify(self, handler: ResourceEventHandler, method: str, *args: Any) -> None:
        try:
            getattr(handler, method)(*args)
        except Exception:
            self.logger.exception("Event handler %r failed in %s", handler, method)
