from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from informer.src.models import GVR

LOGGER = logging.getLogger(__name__)


class ResourceTypeNotFoundError(LookupError):
    """Raised when the API server does not serve the requested GVR."""

    def __init__(self, gvr: GVR) -> None:
        super().__init__(f"Resource type {gvr} is not served by the API server")
        self.gvr = gvr


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_dynamic_client() -> DynamicClient:
    """Return a dynamic client using the active kube configuration."""
    return DynamicClient(client.ApiClient())


class ResourceClient:
    """List and watch arbitrary GVRs through the Kubernetes dynamic client.

    Objects are returned as plain dicts (the raw API representation) so the
    rest of the runtime never depends on generated model classes.
    """

    def __init__(self, dynamic_client: DynamicClient) -> None:
        self._dynamic = dynamic_client
        self._resources: dict[GVR, Any] = {}
        self._lock = threading.Lock()

    def resource_for(self, gvr: GVR) -> Any:
        with self._lock:
            cached = self._resources.get(gvr)
        if cached is not None:
            return cached
        try:
            resource = self._dynamic.resources.get(api_version=gvr.api_version, name=gvr.resource)
        except ResourceNotFoundError as exc:
            raise ResourceTypeNotFoundError(gvr) from exc
        with self._lock:
            self._resources[gvr] = resource
        return resource

    def list(
        self,
        gvr: GVR,
        namespace: str | None = None,
        field_selector: str | None = None,
        label_selector: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Return ``(items, resourceVersion)`` for a full listing."""
        resource = self.resource_for(gvr)
        response = self._dynamic.get(
            resource,
            namespace=namespace,
            field_selector=field_selector,
            label_selector=label_selector,
        )
        payload = response.to_dict() if hasattr(response, "to_dict") else dict(response)
        items = [item for item in payload.get("items") or [] if isinstance(item, dict)]
        resource_version = (payload.get("metadata") or {}).get("resourceVersion")
        return items, resource_version

    def watch(
        self,
        gvr: GVR,
        watcher: watch.Watch,
        namespace: str | None = None,
        field_selector: str | None = None,
        label_selector: str | None = None,
        resource_version: str | None = None,
        timeout_seconds: int | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Yield ``{"type": ..., "object": <dict>}`` events from a watch stream.

        *watcher* is supplied by the caller so it can interrupt the stream
        with ``watcher.stop()`` from another thread.
        """
        resource = self.resource_for(gvr)
        for event in self._dynamic.watch(
            resource,
            namespace=namespace,
            field_selector=field_selector,
            label_selector=label_selector,
            resource_version=resource_version,
            timeout=timeout_seconds,
            watcher=watcher,
        ):
            yield {"type": event.get("type"), "object": event.get("raw_object")}
