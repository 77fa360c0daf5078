from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace to watch; empty string watches every namespace.
        workers: Number of concurrent worker threads.
        max_retries: Rate-limited requeues allowed per failure episode before a
                     key is forgotten.
        resync_period_seconds: Interval for re-delivering every cached object as
                               an update; ``0`` disables resync.
        cache_sync_timeout_seconds: Upper bound on the startup sync wait; ``0``
                                    waits until the stop signal.
        watch_timeout_seconds: Server-side timeout of a single watch request.
        rate_limit_base_delay_seconds: First per-key retry delay.
        rate_limit_max_delay_seconds: Cap on the per-key retry delay.
        rate_limit_qps: Sustained rate of the overall retry token bucket.
        rate_limit_burst: Size of the overall retry token bucket.
        health_port: Port of the optional health/metrics listener; ``0`` disables it.
        kubeconfig_path: Path to an external kubeconfig, or ``None`` for in-cluster.
    """

    namespace: str = ""
    workers: int = 1
    max_retries: int = 5
    resync_period_seconds: float = 0.0
    cache_sync_timeout_seconds: float = 0.0
    watch_timeout_seconds: int = 30
    rate_limit_base_delay_seconds: float = 0.005
    rate_limit_max_delay_seconds: float = 1000.0
    rate_limit_qps: float = 10.0
    rate_limit_burst: int = 100
    health_port: int = 0
    kubeconfig_path: str | None = None


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be a number") from exc
        if not math.isfinite(value):
            raise ValueError(f"{name} must be a finite number")

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_config(
    env: Mapping[str, str] | None = None,
    kubeconfig_path: str | None = None,
) -> ControllerConfig:
    """Load controller config from the environment.

    An explicit ``kubeconfig_path`` (the positional command line argument)
    takes precedence over ``KUBECONFIG_PATH``.  Invalid numbers are reported as
    :class:`ConfigError` so the entrypoint can fail fast with one message.
    """
    values = env if env is not None else os.environ

    try:
        config = ControllerConfig(
            namespace=values.get("WATCH_NAMESPACE", "").strip(),
            workers=env_int("WORKERS", 1, minimum=1, env=values),
            max_retries=env_int("MAX_RETRIES", 5, minimum=0, env=values),
            resync_period_seconds=env_float("RESYNC_PERIOD_SECONDS", 0.0, minimum=0.0, env=values),
            cache_sync_timeout_seconds=env_float(
                "CACHE_SYNC_TIMEOUT_SECONDS", 0.0, minimum=0.0, env=values
            ),
            watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 30, minimum=1, env=values),
            rate_limit_base_delay_seconds=env_float(
                "RATE_LIMIT_BASE_DELAY_SECONDS", 0.005, minimum=0.0, env=values
            ),
            rate_limit_max_delay_seconds=env_float(
                "RATE_LIMIT_MAX_DELAY_SECONDS", 1000.0, minimum=0.0, env=values
            ),
            rate_limit_qps=env_float("RATE_LIMIT_QPS", 10.0, minimum=0.001, env=values),
            rate_limit_burst=env_int("RATE_LIMIT_BURST", 100, minimum=1, env=values),
            health_port=env_int("HEALTH_PORT", 0, minimum=0, maximum=65535, env=values),
            kubeconfig_path=kubeconfig_path or values.get("KUBECONFIG_PATH") or None,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    if config.rate_limit_max_delay_seconds < config.rate_limit_base_delay_seconds:
        raise ConfigError(
            "RATE_LIMIT_MAX_DELAY_SECONDS must not be smaller than "
            "RATE_LIMIT_BASE_DELAY_SECONDS"
        )
    return config
