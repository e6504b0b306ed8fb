from __future__ import annotations

from typing import Any, Callable, Mapping

import structlog

from autopolicy.models import ObjectRef, Workload
from autopolicy.selectors import matches
from autopolicy.store import PolicySnapshot

logger = structlog.get_logger()


class PolicyRouter:
    """
    Map an observed object to the policy that must be re-reconciled.

    Runs on the watch event path: no network calls, no writes to the snapshot.
    When several policies select the same workload the first one by name wins.
    """

    def __init__(self, snapshot: Callable[[], PolicySnapshot], policy_kind: str = "AutoPolicy") -> None:
        self._snapshot = snapshot
        self._policy_kind = policy_kind

    def route(self, workload: Workload) -> ObjectRef | None:
        for policy in self._snapshot():
            spec = policy.spec
            if matches(spec.namespace_filter, spec.object_selector, workload.namespace, workload.labels):
                return policy.ref
        return None

    def route_owner(self, obj: Mapping[str, Any]) -> ObjectRef | None:
        """Map a derived object to the policy that controls it."""
        metadata = obj.get("metadata") or {}
        for owner in metadata.get("ownerReferences") or []:
            if owner.get("kind") == self._policy_kind and owner.get("controller"):
                return ObjectRef(name=owner["name"])
        return None
