from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable, Iterator
from types import SimpleNamespace
from typing import Any
from unittest.mock import patch

import pytest

from basecontroller.src.cache import (
    CacheError,
    DeletedFinalStateUnknown,
    EventType,
    Informer,
    KeyFuncError,
    ResourceExpiredError,
    ThreadSafeStore,
    WatchEvent,
    meta_namespace_key,
    split_meta_namespace_key,
)


def make_pod(name: str, namespace: str = "ns", phase: str = "Running") -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace),
        status=SimpleNamespace(phase=phase),
    )


class FakeSource:
    """In-memory event source: ``list`` returns ``items``; ``watch`` drains ``events``.

    Pushing ``None`` ends the current watch; pushing an exception raises it
    from the watch stream.
    """

    def __init__(self, items: list[Any] | None = None, list_failures: int = 0) -> None:
        self.items = list(items or [])
        self.list_failures = list_failures
        self.list_calls = 0
        self.events: queue.Queue[Any] = queue.Queue()

    def list(self) -> list[tuple[str, Any]]:
        self.list_calls += 1
        if self.list_failures > 0:
            self.list_failures -= 1
            raise RuntimeError("list failed")
        return [(meta_namespace_key(obj), obj) for obj in self.items]

    def watch(self) -> Iterator[WatchEvent]:
        while True:
            event = self.events.get()
            if event is None:
                return
            if isinstance(event, Exception):
                raise event
            yield event

    def stop(self) -> None:
        self.events.put(None)

    def push(self, event_type: EventType, obj: Any) -> None:
        self.events.put(WatchEvent(type=event_type, key=meta_namespace_key(obj), obj=obj))


class RecordingHandler:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self._lock = threading.Lock()

    def _record(self, entry: tuple[str, Any]) -> None:
        with self._lock:
            self.calls.append(entry)

    def on_add(self, obj: Any) -> None:
        self._record(("add", meta_namespace_key(obj)))

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        self._record(("update", meta_namespace_key(new_obj)))

    def on_delete(self, obj: Any) -> None:
        self._record(("delete", obj))

    def snapshot(self) -> list[tuple[str, Any]]:
        with self._lock:
            return list(self.calls)


def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class RunningInformer:
    """Run an informer in a background thread for the duration of a ``with`` block."""

    def __init__(self, informer: Informer) -> None:
        self.informer = informer
        self.stop = threading.Event()
        self.thread = threading.Thread(target=informer.run, args=(self.stop,), daemon=True)

    def __enter__(self) -> Informer:
        self.thread.start()
        return self.informer

    def __exit__(self, *exc: object) -> None:
        self.stop.set()
        self.informer.request_stop()
        self.thread.join(timeout=5)
        assert not self.thread.is_alive()


# ---------------------------------------------------------------------------
# Key function tests
# ---------------------------------------------------------------------------


def test_meta_namespace_key_for_namespaced_object() -> None:
    assert meta_namespace_key(make_pod("pod-1", namespace="default")) == "default/pod-1"


def test_meta_namespace_key_for_cluster_scoped_object() -> None:
    node = SimpleNamespace(metadata=SimpleNamespace(name="node-1", namespace=None))
    assert meta_namespace_key(node) == "node-1"


def test_meta_namespace_key_for_dict_object() -> None:
    obj = {"metadata": {"name": "pod-1", "namespace": "apps"}}
    assert meta_namespace_key(obj) == "apps/pod-1"


def test_meta_namespace_key_unwraps_tombstone() -> None:
    tombstone = DeletedFinalStateUnknown(key="ns/gone", obj=None)
    assert meta_namespace_key(tombstone) == "ns/gone"


@pytest.mark.parametrize(
    "obj",
    [
        SimpleNamespace(),
        SimpleNamespace(metadata=SimpleNamespace(name="", namespace="ns")),
        {"metadata": {"namespace": "ns"}},
    ],
)
def test_meta_namespace_key_rejects_objects_without_name(obj: Any) -> None:
    with pytest.raises(KeyFuncError):
        meta_namespace_key(obj)


def test_split_meta_namespace_key() -> None:
    assert split_meta_namespace_key("ns/pod-1") == ("ns", "pod-1")
    assert split_meta_namespace_key("node-1") == ("", "node-1")
    with pytest.raises(KeyFuncError):
        split_meta_namespace_key("a/b/c")


# ---------------------------------------------------------------------------
# ThreadSafeStore tests
# ---------------------------------------------------------------------------


def test_store_add_get_and_delete() -> None:
    store = ThreadSafeStore()
    pod = make_pod("pod-1")

    store.add("ns/pod-1", pod)

    assert store.get_by_key("ns/pod-1") == (pod, True)
    assert "ns/pod-1" in store
    assert store.delete("ns/pod-1") is pod
    assert store.get_by_key("ns/pod-1") == (None, False)
    assert store.delete("ns/pod-1") is None


def test_store_list_and_replace() -> None:
    store = ThreadSafeStore()
    store.add("ns/a", "A")

    store.replace({"ns/b": "B", "ns/c": "C"})

    assert sorted(store.list_keys()) == ["ns/b", "ns/c"]
    assert sorted(store.list()) == ["B", "C"]
    assert len(store) == 2


def test_store_lookup_fault_raises_cache_error() -> None:
    store = ThreadSafeStore()
    with pytest.raises(CacheError):
        store.get_by_key(["not", "hashable"])  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Informer tests
# ---------------------------------------------------------------------------


def test_informer_syncs_initial_listing_and_notifies_adds() -> None:
    source = FakeSource(items=[make_pod("pod-1"), make_pod("pod-2")])
    informer = Informer(source)
    handler = RecordingHandler()
    informer.add_event_handler(handler)

    assert not informer.has_synced()
    with RunningInformer(informer):
        assert informer.wait_for_sync(timeout=2)
        assert informer.has_synced()
        assert sorted(informer.store.list_keys()) == ["ns/pod-1", "ns/pod-2"]
        assert sorted(handler.snapshot()) == [("add", "ns/pod-1"), ("add", "ns/pod-2")]

    assert informer.has_synced()


def test_informer_applies_watch_events_to_store() -> None:
    source = FakeSource()
    informer = Informer(source)
    handler = RecordingHandler()
    informer.add_event_handler(handler)

    with RunningInformer(informer):
        assert informer.wait_for_sync(timeout=2)
        created = make_pod("pod-1", phase="Pending")
        updated = make_pod("pod-1", phase="Running")
        source.push(EventType.ADDED, created)
        source.push(EventType.MODIFIED, updated)
        source.push(EventType.DELETED, updated)

        assert _wait_until(lambda: len(handler.snapshot()) == 3)

    assert handler.snapshot() == [
        ("add", "ns/pod-1"),
        ("update", "ns/pod-1"),
        ("delete", updated),
    ]
    assert informer.store.get_by_key("ns/pod-1") == (None, False)


def test_informer_treats_duplicate_added_as_update() -> None:
    pod = make_pod("pod-1")
    source = FakeSource(items=[pod])
    informer = Informer(source)
    handler = RecordingHandler()
    informer.add_event_handler(handler)

    with RunningInformer(informer):
        assert informer.wait_for_sync(timeout=2)
        newer = make_pod("pod-1", phase="Succeeded")
        source.push(EventType.ADDED, newer)
        assert _wait_until(lambda: len(handler.snapshot()) == 2)

    assert handler.snapshot() == [("add", "ns/pod-1"), ("update", "ns/pod-1")]
    assert informer.store.get_by_key("ns/pod-1") == (newer, True)


def test_informer_relists_on_expired_resource_version_and_reports_vanished_objects() -> None:
    kept = make_pod("kept")
    gone = make_pod("gone")
    source = FakeSource(items=[kept, gone])
    informer = Informer(source)
    handler = RecordingHandler()
    informer.add_event_handler(handler)

    with RunningInformer(informer):
        assert informer.wait_for_sync(timeout=2)
        fresh = make_pod("fresh")
        source.items = [kept, fresh]
        source.events.put(ResourceExpiredError("too old resource version"))

        assert _wait_until(lambda: ("add", "ns/fresh") in handler.snapshot())

    assert sorted(informer.store.list_keys()) == ["ns/fresh", "ns/kept"]
    calls = handler.snapshot()
    assert ("add", "ns/fresh") in calls
    assert ("update", "ns/kept") in calls
    deletes = [obj for kind, obj in calls if kind == "delete"]
    assert deletes == [DeletedFinalStateUnknown(key="ns/gone", obj=gone)]


def test_informer_retries_failed_initial_list_after_backoff() -> None:
    source = FakeSource(items=[make_pod("pod-1")], list_failures=1)
    informer = Informer(source)

    with patch("basecontroller.src.cache.random.random", return_value=0.0):
        with RunningInformer(informer):
            assert not informer.has_synced()
            assert informer.wait_for_sync(timeout=3)

    assert source.list_calls == 2
    assert informer.store.list_keys() == ["ns/pod-1"]


def test_informer_contains_watch_failures() -> None:
    source = FakeSource(items=[make_pod("pod-1")])
    informer = Informer(source)

    with patch("basecontroller.src.cache.random.random", return_value=0.0):
        with RunningInformer(informer) as running:
            assert running.wait_for_sync(timeout=2)
            source.events.put(RuntimeError("connection reset"))
            assert _wait_until(lambda: source.list_calls == 2, timeout=3)


def test_informer_isolates_failing_handlers() -> None:
    class ExplodingHandler(RecordingHandler):
        def on_add(self, obj: Any) -> None:
            raise RuntimeError("handler bug")

    source = FakeSource(items=[make_pod("pod-1")])
    informer = Informer(source)
    healthy = RecordingHandler()
    informer.add_event_handler(ExplodingHandler())
    informer.add_event_handler(healthy)

    with RunningInformer(informer):
        assert informer.wait_for_sync(timeout=2)
        source.push(EventType.ADDED, make_pod("pod-2"))
        assert _wait_until(lambda: len(healthy.snapshot()) == 2)

    assert healthy.snapshot() == [("add", "ns/pod-1"), ("add", "ns/pod-2")]


def test_informer_replays_cache_to_handlers_added_after_sync() -> None:
    source = FakeSource(items=[make_pod("pod-1")])
    informer = Informer(source)

    with RunningInformer(informer):
        assert informer.wait_for_sync(timeout=2)
        late = RecordingHandler()
        informer.add_event_handler(late)

    assert late.snapshot() == [("add", "ns/pod-1")]


def test_informer_resync_redelivers_cached_objects_as_updates() -> None:
    source = FakeSource(items=[make_pod("pod-1")])
    informer = Informer(source, resync_period=0.05)
    handler = RecordingHandler()
    informer.add_event_handler(handler)

    with RunningInformer(informer):
        assert _wait_until(lambda: ("update", "ns/pod-1") in handler.snapshot())


def test_informer_without_resync_does_not_redeliver() -> None:
    source = FakeSource(items=[make_pod("pod-1")])
    informer = Informer(source)
    handler = RecordingHandler()
    informer.add_event_handler(handler)

    with RunningInformer(informer):
        assert informer.wait_for_sync(timeout=2)
        time.sleep(0.1)

    assert handler.snapshot() == [("add", "ns/pod-1")]
