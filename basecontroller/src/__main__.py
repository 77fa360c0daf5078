from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading
from collections.abc import Sequence
from typing import Any

from basecontroller.src.cache import split_meta_namespace_key
from basecontroller.src.config import load_config
from basecontroller.src.controller import CacheSyncError, build_controller
from basecontroller.src.health import start_health_server
from basecontroller.src.kube import build_core_api, load_kube_configuration
from basecontroller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


class PodNameLoggingHandler:
    """Default handler: log the name of every Pod that is created, updated or deleted."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("basecontroller.pods")

    def object_created_or_updated(self, obj: Any) -> None:
        name = getattr(getattr(obj, "metadata", None), "name", None)
        self.logger.info("Pod created or updated with name: %s", name)

    def object_deleted(self, key: str) -> None:
        _, name = split_meta_namespace_key(key)
        self.logger.info("Pod deleted with name: %s (key %s)", name, key)


def configure_logging() -> None:
    """Install the JSON formatter on the root logger with a level from ``LOG_LEVEL``."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main(argv: Sequence[str] | None = None) -> int:
    """Controller entrypoint: configure logging, connect to the cluster, and run until signalled.

    The optional first argument is a path to a kubeconfig; without it the
    in-cluster configuration is used.  Returns the process exit code.
    """
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    args = list(sys.argv[1:] if argv is None else argv)
    try:
        config = load_config(kubeconfig_path=args[0] if args else None)
        load_kube_configuration(config.kubeconfig_path)
        core_api = build_core_api()
    except Exception:
        LOGGER.critical("Error initializing client", exc_info=True)
        return 1

    controller = build_controller(config, core_api=core_api, handler=PodNameLoggingHandler())

    health_server = None
    if config.health_port:
        health_server = start_health_server(ready=controller.ready, port=config.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run(stop_event=shutdown_event)
    except CacheSyncError:
        LOGGER.critical("Cache failed to sync; exiting")
        return 1
    finally:
        if health_server is not None:
            health_server.shutdown()

    LOGGER.info("Controller process exiting")
    return 0


if __name__ == "__main__":
    sys.exit(main())
