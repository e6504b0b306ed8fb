"""
CLI commands for previewing a policy offline.

``plan`` evaluates a policy manifest against workload manifests read from
disk and prints the derived objects a reconcile would apply. ``query``
prints the label query the controller would send to the API server.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

import pydantic
import yaml

from autopolicy.cli.ux import console, header, info, print_table, success, warning
from autopolicy.config import Settings, get_settings
from autopolicy.core.errors import ValidationError, main_with_error_handling
from autopolicy.models import AutoPolicy, ResourceKind
from autopolicy.reconciler import build_derived_object, owner_reference, select_workloads
from autopolicy.selectors import compile_to_query, parse_query

# Stands in for the uid the API server assigns on create.
PENDING_UID = "00000000-0000-0000-0000-000000000000"


@dataclass
class PlanResult:
    """Derived objects a reconcile of one policy would apply."""

    policy: str
    query: str | None
    derived: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def matched(self) -> int:
        return len(self.derived)


def load_manifests(path: str | Path) -> list[dict[str, Any]]:
    """Read every object from a (multi-document) YAML file, expanding List kinds."""
    with open(path, encoding="utf-8") as f:
        documents = [doc for doc in yaml.safe_load_all(f) if doc]

    manifests: list[dict[str, Any]] = []
    for doc in documents:
        if not isinstance(doc, dict):
            raise ValidationError("Manifest is not a mapping", {"file": str(path)})
        if doc.get("kind", "").endswith("List"):
            manifests.extend(doc.get("items") or [])
        else:
            manifests.append(doc)
    return manifests


def load_policy(path: str | Path, policy_kind: str = "AutoPolicy") -> AutoPolicy:
    for manifest in load_manifests(path):
        if manifest.get("kind") == policy_kind:
            try:
                return AutoPolicy.from_dict(manifest)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid {policy_kind}: {e.errors()[0]['msg']}", {"file": str(path)}) from e
    raise ValidationError(f"No {policy_kind} found", {"file": str(path)})


def plan_policy(
    policy: AutoPolicy,
    manifests: Iterable[dict[str, Any]],
    *,
    workload_kinds: Sequence[ResourceKind],
    derived_kind: ResourceKind,
    name_suffix: str = "policy",
) -> PlanResult:
    """Compute the derived objects for a policy against a fixed set of workloads."""
    selector = policy.spec.object_selector
    query = compile_to_query(selector) if selector is not None else None
    result = PlanResult(policy=policy.name, query=query)

    if selector is None:
        return result

    if not policy.metadata.uid:
        metadata = policy.metadata.model_copy(update={"uid": PENDING_UID})
        policy = policy.model_copy(update={"metadata": metadata})
    owner = owner_reference(policy)

    kinds = {(kind.api_version, kind.kind): kind for kind in workload_kinds}
    for manifest in manifests:
        kind = kinds.get((manifest.get("apiVersion", ""), manifest.get("kind", "")))
        if kind is None:
            continue
        selected, errors = select_workloads(policy, kind, [manifest])
        result.skipped.extend(e.message for e in errors)
        result.derived.extend(
            build_derived_object(policy, workload, owner, derived_kind, name_suffix)
            for workload in selected
        )

    return result


def print_plan(result: PlanResult) -> None:
    header(f"Plan: {result.policy}")
    if result.query is None:
        warning("objectSelector is absent; this policy matches nothing")
    else:
        info(f"Label query: {result.query or '(empty - every workload)'}")

    for reason in result.skipped:
        warning(f"Skipped workload: {reason}")

    if not result.derived:
        console.print("  No derived objects")
        return

    rows = [
        [
            obj["spec"]["targetRef"]["kind"],
            obj["metadata"]["namespace"],
            obj["spec"]["targetRef"]["name"],
            obj["metadata"]["name"],
        ]
        for obj in result.derived
    ]
    print_table("Derived objects", ["Kind", "Namespace", "Workload", "Derived"], rows)
    success(f"{result.matched} workload(s) matched")


@main_with_error_handling()
def plan_command(
    policy_file: str,
    workloads_file: str | None = None,
    output_format: str = "text",
    selector: str | None = None,
    settings: Settings | None = None,
) -> int:
    """Preview the derived objects a policy would produce."""
    settings = settings or get_settings()
    policy = load_policy(policy_file, settings.policy_kind)
    if selector is not None:
        # Try a label query without editing the manifest.
        spec = policy.spec.model_copy(update={"object_selector": parse_query(selector)})
        policy = policy.model_copy(update={"spec": spec})
    manifests = load_manifests(workloads_file) if workloads_file else []

    result = plan_policy(
        policy,
        manifests,
        workload_kinds=settings.workload_kinds,
        derived_kind=settings.derived_kind_ref,
        name_suffix=settings.derived_name_suffix,
    )

    if output_format == "yaml":
        print(yaml.safe_dump_all(result.derived, sort_keys=False), end="")
    else:
        print_plan(result)
    return 0


@main_with_error_handling()
def query_command(policy_file: str, settings: Settings | None = None) -> int:
    """Print the label query compiled from a policy's objectSelector."""
    settings = settings or get_settings()
    policy = load_policy(policy_file, settings.policy_kind)
    selector = policy.spec.object_selector
    if selector is None:
        warning("objectSelector is absent; this policy matches nothing")
        return 0
    print(compile_to_query(selector))
    return 0
