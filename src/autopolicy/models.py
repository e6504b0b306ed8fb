from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from autopolicy.core.errors import MissingRequiredFieldError


class ResourceKind(BaseModel):
    """A (group, version, kind) triple plus the plural used in API paths."""

    model_config = ConfigDict(frozen=True)

    group: str = ""
    version: str
    kind: str
    plural: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        return f"{self.kind}.{self.api_version}"


DEFAULT_WORKLOAD_KINDS: tuple[ResourceKind, ...] = (
    ResourceKind(group="apps", version="v1", kind="Deployment", plural="deployments"),
    ResourceKind(group="apps", version="v1", kind="StatefulSet", plural="statefulsets"),
    ResourceKind(group="apps", version="v1", kind="DaemonSet", plural="daemonsets"),
    ResourceKind(group="batch", version="v1", kind="Job", plural="jobs"),
)


class LabelSelectorRequirement(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    # Kept as a plain string so unknown operators survive parsing and can be
    # reported by the evaluator instead of rejected here.
    operator: str
    values: list[str] | None = None


class LabelSelector(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    match_labels: dict[str, str] | None = Field(default=None, alias="matchLabels")
    match_expressions: list[LabelSelectorRequirement] | None = Field(
        default=None, alias="matchExpressions"
    )

    @property
    def is_empty(self) -> bool:
        """True when the selector has no clauses and therefore selects everything."""
        return not self.match_labels and not self.match_expressions


class PolicyTemplate(BaseModel):
    """Metadata overrides and spec skeleton copied into every derived object."""

    metadata: dict[str, Any] = Field(default_factory=dict)
    spec: dict[str, Any] = Field(default_factory=dict)


class AutoPolicySpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    namespace_filter: list[str] | None = Field(default=None, alias="namespaceFilter")
    object_selector: LabelSelector | None = Field(default=None, alias="objectSelector")
    template: PolicyTemplate = Field(default_factory=PolicyTemplate)


class AutoPolicyStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    matched_count: int = Field(default=0, alias="matchedCount")


class ObjectMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str | None = None
    namespace: str | None = None
    uid: str | None = None
    generation: int | None = None
    resource_version: str | None = Field(default=None, alias="resourceVersion")
    labels: dict[str, str] = Field(default_factory=dict)


class AutoPolicy(BaseModel):
    """Cluster-scoped policy that derives one autoscaling object per matched workload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_version: str = Field(default="autopolicy.dev/v1", alias="apiVersion")
    kind: str = "AutoPolicy"
    metadata: ObjectMetadata = Field(default_factory=ObjectMetadata)
    spec: AutoPolicySpec = Field(default_factory=AutoPolicySpec)
    status: AutoPolicyStatus | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AutoPolicy:
        return cls.model_validate(dict(data))

    @property
    def name(self) -> str:
        return self.metadata.name or ""

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(name=self.name)


@dataclass(frozen=True, slots=True)
class ObjectRef:
    """Identity of an object as used for queue keys."""

    name: str
    namespace: str | None = None

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True, slots=True)
class Workload:
    """The one capability the engine needs from any workload kind."""

    kind: ResourceKind
    namespace: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.kind.api_version, self.kind.kind, self.namespace, self.name)

    @classmethod
    def from_object(cls, kind: ResourceKind, obj: Mapping[str, Any]) -> Workload:
        """Build a workload from a raw API object (dict form)."""
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            raise MissingRequiredFieldError(".metadata.name", {"kind": kind.kind})
        namespace = metadata.get("namespace")
        if not namespace:
            raise MissingRequiredFieldError(
                ".metadata.namespace", {"kind": kind.kind, "name": name}
            )
        return cls(
            kind=kind,
            namespace=namespace,
            name=name,
            labels=dict(metadata.get("labels") or {}),
        )
