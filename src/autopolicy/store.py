"""
Reflector cache of AutoPolicy objects.

Watch threads write into the store; the router and reconciler only ever see
immutable snapshots, so nothing downstream needs to hold the store lock.
"""

from __future__ import annotations

import threading
from typing import Any, Iterable, Iterator, Mapping

import structlog

from autopolicy.models import AutoPolicy

logger = structlog.get_logger()


class PolicySnapshot:
    """Read-only view of the cached policies, ordered by policy name."""

    __slots__ = ("_policies", "_by_name")

    def __init__(self, policies: Mapping[str, AutoPolicy] | None = None) -> None:
        items = sorted((policies or {}).items())
        self._policies: tuple[AutoPolicy, ...] = tuple(policy for _, policy in items)
        self._by_name: dict[str, AutoPolicy] = dict(items)

    def __iter__(self) -> Iterator[AutoPolicy]:
        return iter(self._policies)

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> AutoPolicy | None:
        return self._by_name.get(name)


class PolicyStore:
    """Thread-safe cache of policies keyed by name."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._policies: dict[str, AutoPolicy] = {}
        self._snapshot: PolicySnapshot | None = PolicySnapshot()

    def upsert(self, policy: AutoPolicy) -> None:
        if not policy.name:
            logger.warning("policy_without_name_ignored")
            return
        with self._lock:
            self._policies[policy.name] = policy
            self._snapshot = None

    def upsert_raw(self, obj: Mapping[str, Any]) -> AutoPolicy:
        policy = AutoPolicy.from_dict(obj)
        self.upsert(policy)
        return policy

    def replace(self, policies: Iterable[AutoPolicy]) -> list[str]:
        """Swap in the result of a full list; return the names that disappeared."""
        listed = {policy.name: policy for policy in policies if policy.name}
        with self._lock:
            removed = sorted(set(self._policies) - set(listed))
            self._policies = listed
            self._snapshot = None
        return removed

    def delete(self, name: str) -> None:
        with self._lock:
            if self._policies.pop(name, None) is not None:
                self._snapshot = None

    def get(self, name: str) -> AutoPolicy | None:
        with self._lock:
            return self._policies.get(name)

    def snapshot(self) -> PolicySnapshot:
        """Return the current snapshot, rebuilding it only after a write."""
        with self._lock:
            if self._snapshot is None:
                self._snapshot = PolicySnapshot(self._policies)
            return self._snapshot

    def __len__(self) -> int:
        with self._lock:
            return len(self._policies)
