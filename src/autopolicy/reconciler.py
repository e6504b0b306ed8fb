"""
Reconciliation of one AutoPolicy.

A pass lists every configured workload kind with the policy's compiled label
query, keeps the workloads inside the namespace filter, server-side applies
one derived autoscaling object per workload and records the match count on
the policy status. Passes are idempotent and safe to repeat.

Derived objects whose workload stopped matching are not deleted here; they
are collected with their owning policy.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import structlog

from autopolicy.core.errors import (
    AutoPolicyError,
    MissingRequiredFieldError,
    OwnerResolutionError,
    UpstreamUnavailableError,
)
from autopolicy.logging import bind_context
from autopolicy.models import AutoPolicy, ObjectRef, ResourceKind, Workload
from autopolicy.selectors import compile_to_query, matches
from autopolicy.store import PolicyStore

logger = structlog.get_logger()

# Copied template metadata must not carry identity or server-owned fields.
_RESERVED_METADATA = ("name", "namespace", "uid", "resourceVersion", "generation",
                      "creationTimestamp", "deletionTimestamp", "managedFields", "ownerReferences")


class ClusterClient(Protocol):
    async def list_objects(
        self, kind: ResourceKind, label_selector: str | None = None, *, limit: int | None = None
    ) -> list[dict[str, Any]]: ...

    async def apply(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]: ...

    async def patch_status(self, kind: ResourceKind, policy: AutoPolicy, matched_count: int) -> dict[str, Any]: ...


@dataclass
class ReconcileReport:
    """Counters for one reconcile pass."""

    policy: str
    matched: int = 0
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """What the scheduler should do next with the policy."""

    requeue_after: float | None = None
    report: ReconcileReport | None = None

    @classmethod
    def await_change(cls, report: ReconcileReport | None = None) -> ReconcileResult:
        return cls(requeue_after=None, report=report)

    @classmethod
    def requeue(cls, after: float, report: ReconcileReport | None = None) -> ReconcileResult:
        return cls(requeue_after=after, report=report)


def owner_reference(policy: AutoPolicy) -> dict[str, Any]:
    """
    Build the controller owner reference pointing at a policy.

    Raises:
        OwnerResolutionError: If the policy has no name or uid yet
    """
    if not policy.metadata.name or not policy.metadata.uid:
        raise OwnerResolutionError(
            "Failed to get owner ref",
            {"name": policy.metadata.name, "uid": policy.metadata.uid},
        )
    return {
        "apiVersion": policy.api_version,
        "kind": policy.kind,
        "name": policy.metadata.name,
        "uid": policy.metadata.uid,
        "controller": True,
    }


def derived_name(workload_name: str, suffix: str = "policy") -> str:
    return f"{workload_name}-{suffix}"


def build_derived_object(
    policy: AutoPolicy,
    workload: Workload,
    owner: dict[str, Any],
    derived_kind: ResourceKind,
    name_suffix: str = "policy",
) -> dict[str, Any]:
    """Render the derived autoscaling object for one (policy, workload) pair."""
    template = policy.spec.template

    metadata = {
        key: value
        for key, value in copy.deepcopy(template.metadata).items()
        if key not in _RESERVED_METADATA
    }
    metadata["name"] = derived_name(workload.name, name_suffix)
    metadata["namespace"] = workload.namespace
    metadata["ownerReferences"] = [dict(owner)]

    spec = copy.deepcopy(template.spec)
    spec["targetRef"] = {
        "apiVersion": workload.kind.api_version,
        "kind": workload.kind.kind,
        "name": workload.name,
    }

    return {
        "apiVersion": derived_kind.api_version,
        "kind": derived_kind.kind,
        "metadata": metadata,
        "spec": spec,
    }


def select_workloads(
    policy: AutoPolicy,
    kind: ResourceKind,
    objects: Sequence[dict[str, Any]],
) -> tuple[list[Workload], list[MissingRequiredFieldError]]:
    """Keep the listed objects that fall under the policy; collect malformed ones."""
    selected: list[Workload] = []
    errors: list[MissingRequiredFieldError] = []
    spec = policy.spec

    for obj in objects:
        try:
            workload = Workload.from_object(kind, obj)
        except MissingRequiredFieldError as e:
            errors.append(e)
            continue
        # The label query already ran server-side; the namespace filter cannot.
        if matches(spec.namespace_filter, spec.object_selector, workload.namespace, workload.labels):
            selected.append(workload)

    return selected, errors


class Reconciler:
    """Converges the derived objects of one policy at a time."""

    def __init__(
        self,
        cluster: ClusterClient,
        store: PolicyStore,
        *,
        policy_kind: ResourceKind,
        derived_kind: ResourceKind,
        workload_kinds: Sequence[ResourceKind],
        name_suffix: str = "policy",
        requeue_delay: float = 5.0,
    ) -> None:
        self._cluster = cluster
        self._store = store
        self._policy_kind = policy_kind
        self._derived_kind = derived_kind
        self._workload_kinds = tuple(workload_kinds)
        self._name_suffix = name_suffix
        self._requeue_delay = requeue_delay

    async def reconcile(self, ref: ObjectRef) -> ReconcileResult:
        log = bind_context(policy=ref.name)

        policy = self._store.get(ref.name)
        if policy is None:
            # Deleted: derived objects go with it through their owner reference.
            log.info("policy_not_found")
            return ReconcileResult.await_change()

        report = ReconcileReport(policy=ref.name)
        workloads: list[Workload] = []
        malformed: list[MissingRequiredFieldError] = []

        selector = policy.spec.object_selector
        if selector is None:
            log.info("policy_selector_absent")
        else:
            query = compile_to_query(selector)
            owner = owner_reference(policy)
            workloads, malformed = await self.discover(policy, query)

            desired = [
                build_derived_object(policy, workload, owner, self._derived_kind, self._name_suffix)
                for workload in workloads
            ]
            await self._apply_all(desired, report, log)

        report.matched = len(workloads)
        report.skipped = len(malformed)
        for error in malformed:
            log.warning("workload_skipped", reason=error.message, **error.details)
            report.errors.append(error.message)

        await self._cluster.patch_status(self._policy_kind, policy, report.matched)

        log.info(
            "policy_reconciled",
            matched=report.matched,
            applied=report.applied,
            failed=report.failed,
            skipped=report.skipped,
        )

        if malformed:
            first = malformed[0]
            raise MissingRequiredFieldError(first.field, {**first.details, "skipped": len(malformed)})

        return ReconcileResult.await_change(report)

    async def discover(
        self, policy: AutoPolicy, query: str
    ) -> tuple[list[Workload], list[MissingRequiredFieldError]]:
        """List every workload kind with the label query and keep the matching ones."""
        listings = await asyncio.gather(
            *(self._cluster.list_objects(kind, query or None) for kind in self._workload_kinds)
        )

        found: dict[tuple[str, str, str, str], Workload] = {}
        malformed: list[MissingRequiredFieldError] = []
        for kind, objects in zip(self._workload_kinds, listings):
            selected, errors = select_workloads(policy, kind, objects)
            malformed.extend(errors)
            for workload in selected:
                found[workload.key] = workload

        return [found[key] for key in sorted(found)], malformed

    async def _apply_all(
        self,
        desired: Sequence[dict[str, Any]],
        report: ReconcileReport,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        results = await asyncio.gather(
            *(self._cluster.apply(self._derived_kind, body) for body in desired),
            return_exceptions=True,
        )

        for body, result in zip(desired, results):
            metadata = body["metadata"]
            if isinstance(result, UpstreamUnavailableError):
                report.failed += 1
                report.errors.append(result.message)
                log.error(
                    "derived_apply_failed",
                    name=metadata["name"],
                    namespace=metadata["namespace"],
                    error=result.message,
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                report.applied += 1
                log.debug("derived_applied", name=metadata["name"], namespace=metadata["namespace"])

    def error_policy(self, ref: ObjectRef, error: Exception) -> ReconcileResult:
        """Every failed attempt is retried after the same fixed delay."""
        if isinstance(error, AutoPolicyError):
            logger.warning(
                "reconcile_failed",
                policy=ref.name,
                error_type=type(error).__name__,
                message=error.message,
                requeue_after=self._requeue_delay,
                **error.details,
            )
        else:
            logger.error(
                "reconcile_failed_unexpectedly",
                policy=ref.name,
                error_type=type(error).__name__,
                message=str(error),
                requeue_after=self._requeue_delay,
            )
        return ReconcileResult.requeue(self._requeue_delay)
