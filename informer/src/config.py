from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from informer.src.models import GVR, ResourceWatchSpec, Scope


class ConfigError(RuntimeError):
    """Raised when the watch configuration or runtime settings are invalid."""


_SCOPE_ALIASES = {
    "cluster": Scope.CLUSTER,
    "namespaced": Scope.NAMESPACED,
    "namespace": Scope.NAMESPACED,
}


def parse_gvr(value: str) -> GVR:
    """Parse ``v1/<resource>`` or ``<group>/<version>/<resource>`` into a :class:`GVR`."""
    if not isinstance(value, str):
        raise ConfigError(f"GVR must be a string, got: {value!r}")
    parts = value.strip().split("/")
    if any(not part.strip() for part in parts):
        raise ConfigError(f"Invalid GVR {value!r}: empty component")
    if len(parts) == 2:
        return GVR(group="", version=parts[0].strip(), resource=parts[1].strip())
    if len(parts) == 3:
        return GVR(group=parts[0].strip(), version=parts[1].strip(), resource=parts[2].strip())
    raise ConfigError(
        f"Invalid GVR {value!r}: expected 'version/resource' or 'group/version/resource'"
    )


def parse_scope(value: Any, default: Scope = Scope.NAMESPACED) -> Scope:
    if value is None or value == "":
        return default
    if isinstance(value, Scope):
        return value
    scope = _SCOPE_ALIASES.get(str(value).strip().lower())
    if scope is None:
        raise ConfigError(f"Invalid scope {value!r}: must be 'Cluster' or 'Namespaced'")
    return scope


def _string_list(value: Any, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{field_name} must be a list of strings, got: {value!r}")
    return tuple("" if item is None else str(item) for item in value)


def _normalize_namespace_entries(
    entries: Any, normalized: dict[GVR, list[ResourceWatchSpec]]
) -> None:
    if not isinstance(entries, list):
        raise ConfigError("'namespaces' must be a list")

    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            raise ConfigError(f"namespaces[{index}] must be a mapping")
        namespace = entry.get("name_pattern")
        if not namespace:
            raise ConfigError(f"namespaces[{index}] requires a non-empty name_pattern")
        resources = entry.get("resources") or {}
        if not isinstance(resources, Mapping):
            raise ConfigError(f"namespaces[{index}].resources must be a mapping of GVR to details")

        for gvr_text, details in resources.items():
            details = details or {}
            if not isinstance(details, Mapping):
                raise ConfigError(f"namespaces[{index}].resources[{gvr_text!r}] must be a mapping")
            gvr = parse_gvr(gvr_text)
            normalized.setdefault(gvr, []).append(
                ResourceWatchSpec(
                    gvr=gvr,
                    scope=Scope.NAMESPACED,
                    namespaces=(str(namespace),),
                    name=str(details.get("name_pattern") or ""),
                    label_selector=str(details.get("label_selector") or ""),
                )
            )


def _normalize_resource_entries(
    entries: Any, normalized: dict[GVR, list[ResourceWatchSpec]]
) -> None:
    if not isinstance(entries, list):
        raise ConfigError("'resources' must be a list")

    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            raise ConfigError(f"resources[{index}] must be a mapping")
        gvr_text = entry.get("gvr")
        if not gvr_text:
            raise ConfigError(f"resources[{index}] requires a gvr")
        gvr = parse_gvr(gvr_text)
        scope = parse_scope(entry.get("scope"))
        namespaces = tuple(
            ns for ns in _string_list(entry.get("namespace_patterns"), "namespace_patterns") if ns
        )

        if scope is Scope.NAMESPACED and not namespaces:
            raise ConfigError(
                f"resources[{index}] ({gvr}) is namespace-scoped but lists no namespace_patterns"
            )
        if scope is Scope.CLUSTER and namespaces:
            raise ConfigError(
                f"resources[{index}] ({gvr}) is cluster-scoped but lists namespace_patterns"
            )

        normalized.setdefault(gvr, []).append(
            ResourceWatchSpec(
                gvr=gvr,
                scope=scope,
                namespaces=namespaces,
                name=str(entry.get("name_pattern") or ""),
                label_selector=str(entry.get("label_selector") or ""),
            )
        )


def normalize(raw: Mapping[str, Any]) -> dict[GVR, list[ResourceWatchSpec]]:
    """Collapse either configuration shape into ``{GVR: [ResourceWatchSpec, ...]}``.

    Both shapes may be present in one configuration. Entries describing the
    same watch stay separate specs under the same GVR key; informer
    deduplication happens in the registry, not here.
    """
    if not isinstance(raw, Mapping):
        raise ConfigError("Watch configuration must be a mapping")

    normalized: dict[GVR, list[ResourceWatchSpec]] = {}
    if raw.get("namespaces"):
        _normalize_namespace_entries(raw["namespaces"], normalized)
    if raw.get("resources"):
        _normalize_resource_entries(raw["resources"], normalized)

    if not normalized:
        raise ConfigError(
            "No valid configuration found: must have either a 'namespaces' or 'resources' section"
        )
    return normalized


def validate_specs(specs: list[ResourceWatchSpec]) -> None:
    """Reject specs that cannot be watched (used for programmatic additions)."""
    scopes: dict[GVR, Scope] = {}
    for spec in specs:
        if spec.scope is Scope.NAMESPACED and not any(spec.namespaces):
            raise ConfigError(f"{spec.gvr} is namespace-scoped but has no namespace matchers")
        if spec.scope is Scope.CLUSTER and any(spec.namespaces):
            raise ConfigError(f"{spec.gvr} is cluster-scoped but has namespace matchers")
        previous = scopes.setdefault(spec.gvr, spec.scope)
        if previous is not spec.scope:
            raise ConfigError(
                f"Conflicting scopes for {spec.gvr}: {previous.value} and {spec.scope.value}"
            )


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


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
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
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
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


_LOG_LEVELS = {"debug", "info", "warning", "error"}


@dataclass(frozen=True)
class ControllerSettings:
    """Runtime tuning for the controller, loaded once at startup.

    Attributes:
        workers:                  Size of the worker pool draining the queue.
        max_retries:              Retries per event before it is dropped.
        retry_base_delay_seconds: First backoff delay; doubles per failure.
        retry_max_delay_seconds:  Cap on a single backoff delay.
        queue_qps / queue_burst:  Overall token bucket applied to requeues.
        cache_sync_timeout_seconds: How long ``start`` waits for initial sync.
        shutdown_timeout_seconds: Grace period for ``stop``.
        watch_timeout_seconds:    Server-side timeout of a single watch request.
    """

    workers: int = 3
    max_retries: int = 5
    retry_base_delay_seconds: float = 0.005
    retry_max_delay_seconds: float = 30.0
    queue_qps: float = 10.0
    queue_burst: int = 100
    cache_sync_timeout_seconds: float = 60.0
    shutdown_timeout_seconds: float = 30.0
    watch_timeout_seconds: int = 30
    health_port: int = 8080
    log_level: str = "info"
    auto_shutdown_seconds: int = 0


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    """Load :class:`ControllerSettings` from environment variables.

    Environment variables (with defaults):
        ``WORKER_COUNT`` (3), ``MAX_RETRIES`` (5),
        ``RETRY_BASE_DELAY_SECONDS`` (0.005), ``RETRY_MAX_DELAY_SECONDS`` (30),
        ``QUEUE_QPS`` (10), ``QUEUE_BURST`` (100),
        ``CACHE_SYNC_TIMEOUT_SECONDS`` (60), ``SHUTDOWN_TIMEOUT_SECONDS`` (30),
        ``WATCH_TIMEOUT_SECONDS`` (30), ``HEALTH_PORT`` (8080),
        ``LOG_LEVEL`` (``info``), ``AUTO_SHUTDOWN_SECONDS`` (0 = run forever).
    """
    values = env if env is not None else os.environ

    log_level = values.get("LOG_LEVEL", "info").strip().lower()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(
            f"LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}, got: {log_level!r}"
        )

    base_delay = env_float("RETRY_BASE_DELAY_SECONDS", 0.005, minimum=0.0, env=values)
    max_delay = env_float("RETRY_MAX_DELAY_SECONDS", 30.0, minimum=0.0, env=values)
    if max_delay < base_delay:
        raise ConfigError("RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS")

    return ControllerSettings(
        workers=env_int("WORKER_COUNT", 3, minimum=1, env=values),
        max_retries=env_int("MAX_RETRIES", 5, minimum=0, env=values),
        retry_base_delay_seconds=base_delay,
        retry_max_delay_seconds=max_delay,
        queue_qps=env_float("QUEUE_QPS", 10.0, minimum=0.0, env=values),
        queue_burst=env_int("QUEUE_BURST", 100, minimum=1, env=values),
        cache_sync_timeout_seconds=env_float(
            "CACHE_SYNC_TIMEOUT_SECONDS", 60.0, minimum=0.0, env=values
        ),
        shutdown_timeout_seconds=env_float(
            "SHUTDOWN_TIMEOUT_SECONDS", 30.0, minimum=0.0, env=values
        ),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 30, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=0, maximum=65535, env=values),
        log_level=log_level,
        auto_shutdown_seconds=env_int("AUTO_SHUTDOWN_SECONDS", 0, minimum=0, env=values),
    )
