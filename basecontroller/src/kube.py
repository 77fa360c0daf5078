from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from basecontroller.src.cache import (
    EventType,
    KeyFuncError,
    ResourceExpiredError,
    WatchEvent,
    meta_namespace_key,
)

LOGGER = logging.getLogger(__name__)


class WatchError(RuntimeError):
    """Raised when the watch stream reports an error other than an expired resource version."""


def load_kube_configuration(kubeconfig_path: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit ``kubeconfig_path`` selects externally supplied credentials.
    Otherwise in-cluster config is tried first (running inside a pod), falling
    back to the local kubeconfig for development.
    """
    if kubeconfig_path:
        config.load_kube_config(config_file=kubeconfig_path)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig_path)
        return

    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


class KubernetesEventSource:
    """Event source backed by a Kubernetes list function and its watch stream.

    ``list_func`` is any ``list_*`` API method (for example
    ``CoreV1Api.list_pod_for_all_namespaces``); ``list_kwargs`` are passed to
    every list and watch call.  The ``resourceVersion`` of the last listing or
    event is tracked so each new watch resumes where the previous one stopped.
    HTTP ``410 Gone`` surfaces as :class:`ResourceExpiredError` so the informer
    re-lists.
    """

    def __init__(
        self,
        list_func: Callable[..., Any],
        *,
        timeout_seconds: int = 30,
        key_fn: Callable[[Any], str] = meta_namespace_key,
        logger: logging.Logger | None = None,
        **list_kwargs: Any,
    ) -> None:
        self.list_func = list_func
        self.timeout_seconds = timeout_seconds
        self.key_fn = key_fn
        self.list_kwargs = list_kwargs
        self.logger = logger or LOGGER
        self._resource_version: str | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def resource_version(self) -> str | None:
        return self._resource_version

    def list(self) -> list[tuple[str, Any]]:
        result = self.list_func(**self.list_kwargs)
        self._resource_version = getattr(
            getattr(result, "metadata", None), "resource_version", None
        )

        items: list[tuple[str, Any]] = []
        for obj in getattr(result, "items", None) or []:
            try:
                items.append((self.key_fn(obj), obj))
            except KeyFuncError:
                self.logger.warning("Skipping listed object without a usable key")
        self.logger.info(
            "Listed %d object(s) at resourceVersion %s", len(items), self._resource_version
        )
        return items

    def watch(self) -> Iterator[WatchEvent]:
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
        try:
            stream = watcher.stream(
                self.list_func,
                resource_version=self._resource_version,
                timeout_seconds=self.timeout_seconds,
                **self.list_kwargs,
            )
            for event in stream:
                event_type = str(event.get("type", ""))
                obj = event.get("object")

                if event_type == "ERROR":
                    raw = event.get("raw_object") or {}
                    if isinstance(raw, dict) and raw.get("code") == 410:
                        message = raw.get("message", "resource version expired")
                        raise ResourceExpiredError(str(message))
                    raise WatchError(f"watch stream reported an error: {raw!r}")

                metadata = getattr(obj, "metadata", None)
                resource_version = getattr(metadata, "resource_version", None)
                if resource_version:
                    self._resource_version = resource_version

                if event_type not in EventType.__members__:
                    # BOOKMARK events only advance the resource version.
                    continue

                try:
                    key = self.key_fn(obj)
                except KeyFuncError:
                    self.logger.warning(
                        "Skipping %s event for object without a usable key", event_type
                    )
                    continue
                yield WatchEvent(type=EventType(event_type), key=key, obj=obj)
        except ApiException as exc:
            if exc.status == 410:
                raise ResourceExpiredError(str(exc.reason)) from exc
            raise
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None

    def stop(self) -> None:
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()


def build_pod_source(
    core_api: CoreV1Api,
    namespace: str = "",
    timeout_seconds: int = 30,
) -> KubernetesEventSource:
    """Return an event source for Pods in ``namespace``, or in every namespace when empty."""
    if namespace:
        return KubernetesEventSource(
            core_api.list_namespaced_pod,
            timeout_seconds=timeout_seconds,
            namespace=namespace,
        )
    return KubernetesEventSource(
        core_api.list_pod_for_all_namespaces,
        timeout_seconds=timeout_seconds,
    )
