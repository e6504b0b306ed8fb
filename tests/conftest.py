"""Root test configuration."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable

import pytest
import structlog
from autopolicy.core.errors import UpstreamUnavailableError
from autopolicy.models import AutoPolicy, ResourceKind
from autopolicy.selectors import parse_query, selector_matches


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


class FakeCluster:
    """In-memory stand-in for the Kubernetes API used by the reconciler."""

    def __init__(self) -> None:
        self.workloads: dict[ResourceKind, list[dict[str, Any]]] = {}
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.statuses: dict[str, int] = {}
        self.list_calls: list[tuple[ResourceKind, str | None]] = []
        self.apply_calls: list[dict[str, Any]] = []
        self.fail_apply_for: set[str] = set()
        self.fail_list = False
        self.fail_status = False

    def add_workload(self, kind: ResourceKind, obj: dict[str, Any]) -> None:
        self.workloads.setdefault(kind, []).append(obj)

    async def list_objects(
        self, kind: ResourceKind, label_selector: str | None = None, *, limit: int | None = None
    ) -> list[dict[str, Any]]:
        self.list_calls.append((kind, label_selector))
        if self.fail_list:
            raise UpstreamUnavailableError("Kubernetes API list failed: connection refused")
        selector = parse_query(label_selector or "")
        return [
            copy.deepcopy(obj)
            for obj in self.workloads.get(kind, [])
            if selector_matches(selector, (obj.get("metadata") or {}).get("labels") or {})
        ]

    async def apply(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        self.apply_calls.append(copy.deepcopy(body))
        metadata = body["metadata"]
        if metadata["name"] in self.fail_apply_for:
            raise UpstreamUnavailableError("Kubernetes API apply failed: Internal Server Error")
        key = (metadata["namespace"], metadata["name"])
        merged = {**self.objects.get(key, {}), **copy.deepcopy(body)}
        self.objects[key] = merged
        return merged

    async def patch_status(self, kind: ResourceKind, policy: AutoPolicy, matched_count: int) -> dict[str, Any]:
        if self.fail_status:
            raise UpstreamUnavailableError("Kubernetes API patch_status failed: Conflict")
        self.statuses[policy.name] = matched_count
        return {"status": {"matchedCount": matched_count}}

    def collect_garbage(self, owner_uid: str) -> None:
        """Delete dependents of a removed owner, like the cluster garbage collector."""
        self.objects = {
            key: obj
            for key, obj in self.objects.items()
            if not any(ref.get("uid") == owner_uid for ref in obj["metadata"].get("ownerReferences", []))
        }


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def make_workload() -> Callable[..., dict[str, Any]]:
    def factory(
        name: str | None,
        namespace: str | None = "default",
        labels: dict[str, str] | None = None,
        api_version: str = "apps/v1",
        kind: str = "Deployment",
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {"labels": dict(labels or {})}
        if name is not None:
            metadata["name"] = name
        if namespace is not None:
            metadata["namespace"] = namespace
        return {"apiVersion": api_version, "kind": kind, "metadata": metadata}

    return factory


@pytest.fixture
def make_policy() -> Callable[..., AutoPolicy]:
    def factory(
        name: str = "web",
        *,
        uid: str | None = "uid-web",
        namespace_filter: list[str] | None = None,
        selector: dict[str, Any] | None = None,
        template: dict[str, Any] | None = None,
        generation: int | None = 1,
    ) -> AutoPolicy:
        spec: dict[str, Any] = {
            "template": template
            or {
                "metadata": {"labels": {"managed-by": "autopolicy"}},
                "spec": {"updatePolicy": {"updateMode": "Auto"}},
            }
        }
        if namespace_filter is not None:
            spec["namespaceFilter"] = namespace_filter
        if selector is not None:
            spec["objectSelector"] = selector
        metadata: dict[str, Any] = {"name": name, "generation": generation}
        if uid is not None:
            metadata["uid"] = uid
        return AutoPolicy.from_dict(
            {"apiVersion": "autopolicy.dev/v1", "kind": "AutoPolicy", "metadata": metadata, "spec": spec}
        )

    return factory
