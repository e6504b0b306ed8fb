"""
Kubernetes API access for the controller.

All workload kinds, the AutoPolicy CRD and the derived autoscaling resource
go through one generic code path built on the dynamic client, so adding a
workload kind is a configuration change.

Blocking client calls run in the default executor; watch streams are plain
generators consumed by the controller's watch threads.
"""

from __future__ import annotations

import asyncio
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Iterator

import structlog
import urllib3
from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError, ResourceNotUniqueError

from autopolicy.core.errors import ConfigurationError, UpstreamUnavailableError
from autopolicy.models import AutoPolicy, ResourceKind

logger = structlog.get_logger()


@contextmanager
def translate_errors(operation: str, **details: Any) -> Iterator[None]:
    """Re-raise Kubernetes client and transport failures as UpstreamUnavailableError."""
    try:
        yield
    except (ApiException, DynamicApiError) as e:
        status = getattr(e, "status", None)
        raise UpstreamUnavailableError(
            f"Kubernetes API {operation} failed: {getattr(e, 'reason', e)}",
            {"operation": operation, "status": status, **details},
        ) from e
    # Discovery raises ResourceNotFoundError for a kind the server does not serve.
    except (ResourceNotFoundError, ResourceNotUniqueError, urllib3.exceptions.HTTPError, OSError) as e:
        raise UpstreamUnavailableError(
            f"Kubernetes API {operation} failed: {e}",
            {"operation": operation, **details},
        ) from e


@dataclass
class KubeClient:
    """
    Thin async facade over the Kubernetes dynamic client.

    Configuration:
        kubeconfig: Path to kubeconfig file (optional)
        context: Kubeconfig context to use (optional)
        field_manager: Field manager identity for server-side apply
        timeout: API request timeout in seconds
    """

    kubeconfig: str | None = None
    context: str | None = None
    field_manager: str = "autopolicy.dev"
    timeout: float = 30.0

    # Internal state
    _api_client: Any = field(default=None, repr=False, compare=False)
    _dynamic: Any = field(default=None, repr=False, compare=False)
    _resources: dict[ResourceKind, Any] = field(default_factory=dict, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _ensure_initialized(self) -> None:
        """Initialize the dynamic client if not already done."""
        with self._lock:
            if self._dynamic is not None:
                return

            # Try in-cluster config first, then kubeconfig
            try:
                config.load_incluster_config()
            except config.ConfigException:
                try:
                    config.load_kube_config(config_file=self.kubeconfig, context=self.context)
                except config.ConfigException as e:
                    raise ConfigurationError(f"Failed to load Kubernetes config: {e}") from e

            self._api_client = client.ApiClient()
            with translate_errors("discovery"):
                self._dynamic = DynamicClient(self._api_client)

    def resource(self, kind: ResourceKind) -> Any:
        """Resolve (and cache) the dynamic resource for a kind. Blocking."""
        self._ensure_initialized()
        cached = self._resources.get(kind)
        if cached is not None:
            return cached
        with translate_errors("discovery", kind=str(kind)):
            resource = self._dynamic.resources.get(api_version=kind.api_version, kind=kind.kind)
        self._resources[kind] = resource
        return resource

    async def _run_sync(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run synchronous kubernetes API call in executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _get(self, kind: ResourceKind, label_selector: str | None, limit: int | None) -> dict[str, Any]:
        resource = self.resource(kind)
        kwargs: dict[str, Any] = {"_request_timeout": self.timeout}
        if label_selector:
            kwargs["label_selector"] = label_selector
        if limit is not None:
            kwargs["limit"] = limit
        with translate_errors("list", kind=str(kind), label_selector=label_selector):
            result = resource.get(**kwargs)
        return result.to_dict()

    def _list(self, kind: ResourceKind, label_selector: str | None, limit: int | None) -> list[dict[str, Any]]:
        return list(self._get(kind, label_selector, limit).get("items") or [])

    def relist(self, kind: ResourceKind) -> tuple[list[dict[str, Any]], str | None]:
        """List every object of a kind with the list resourceVersion to watch from. Blocking."""
        result = self._get(kind, None, None)
        return list(result.get("items") or []), (result.get("metadata") or {}).get("resourceVersion")

    async def list_objects(
        self,
        kind: ResourceKind,
        label_selector: str | None = None,
        *,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind across all namespaces, filtered server-side."""
        return await self._run_sync(self._list, kind, label_selector, limit)

    def _apply(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        resource = self.resource(kind)
        metadata = body["metadata"]
        with translate_errors("apply", kind=str(kind), name=metadata.get("name"), namespace=metadata.get("namespace")):
            result = self._dynamic.server_side_apply(
                resource,
                body=body,
                name=metadata["name"],
                namespace=metadata.get("namespace"),
                field_manager=self.field_manager,
                force_conflicts=True,
                _request_timeout=self.timeout,
            )
        return result.to_dict()

    async def apply(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        """Server-side apply (idempotent upsert keyed by name and namespace)."""
        return await self._run_sync(self._apply, kind, body)

    def _patch_status(self, kind: ResourceKind, policy: AutoPolicy, matched_count: int) -> dict[str, Any]:
        resource = self.resource(kind)
        body = {"status": {"matchedCount": matched_count}}
        with translate_errors("patch_status", kind=str(kind), name=policy.name):
            result = resource.status.patch(
                body=body,
                name=policy.name,
                content_type="application/merge-patch+json",
                _request_timeout=self.timeout,
            )
        return result.to_dict()

    async def patch_status(self, kind: ResourceKind, policy: AutoPolicy, matched_count: int) -> dict[str, Any]:
        """Merge-patch ``status.matchedCount`` on the policy's status subresource."""
        return await self._run_sync(self._patch_status, kind, policy, matched_count)

    async def check_queryable(self, kind: ResourceKind) -> None:
        """
        Verify a kind is installed and listable.

        Raises:
            ConfigurationError: If the kind cannot be listed
        """
        try:
            await self.list_objects(kind, limit=1)
        except UpstreamUnavailableError as e:
            raise ConfigurationError(
                f"{kind.kind} is not queryable; is the CRD installed?",
                {"kind": str(kind), "cause": e.message},
            ) from e

    def stream(
        self,
        kind: ResourceKind,
        watcher: watch.Watch,
        timeout_seconds: int,
        resource_version: str | None = None,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """
        Yield (event_type, raw_object) for one watch session.

        Without a resource version the API server replays every existing
        object as ADDED before streaming changes, which primes the caches.
        With one (from ``relist``) only changes after that list are sent.
        """
        resource = self.resource(kind)
        with translate_errors("watch", kind=str(kind)):
            for event in self._dynamic.watch(
                resource, resource_version=resource_version, timeout=timeout_seconds, watcher=watcher
            ):
                yield event["type"], event["raw_object"]
