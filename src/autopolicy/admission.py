"""
Admission validation for AutoPolicy objects.

Rejects a policy at write time when:
- the request is not for the expected AutoPolicy kind
- the object has no spec, or the spec does not parse
- the object selector would not compile to a label query
- the template spec sets integer replica bounds with minReplicas > maxReplicas
"""

from __future__ import annotations

from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from autopolicy.core.errors import InvalidSelectorError, ValidationError
from autopolicy.models import AutoPolicySpec, ResourceKind
from autopolicy.selectors import compile_to_query

ADMISSION_API_VERSION = "admission.k8s.io/v1"


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""

    def __str__(self) -> str:
        api_version = f"{self.group}/{self.version}" if self.group else self.version
        return f"{api_version} {self.kind}"


class AdmissionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uid: str
    kind: GroupVersionKind = Field(default_factory=GroupVersionKind)
    operation: str = "CREATE"
    object: dict[str, Any] | None = None


class AdmissionStatus(BaseModel):
    status: str = "Failure"
    message: str
    code: int = 400


class AdmissionResponse(BaseModel):
    uid: str
    allowed: bool
    status: AdmissionStatus | None = None


class AdmissionReview(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(default=ADMISSION_API_VERSION, alias="apiVersion")
    kind: str = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None


def _replica_bound(spec: dict[str, Any], field: str) -> int | None:
    if field not in spec:
        return None
    value = spec[field]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"'{field}' field is not an integer")
    return value


def validate_policy_object(obj: dict[str, Any] | None) -> None:
    """
    Validate the object carried by an admission request.

    Raises:
        ValidationError: With a human-readable message on the first problem
    """
    spec = (obj or {}).get("spec")
    if not isinstance(spec, dict):
        raise ValidationError("Object does not have a 'spec' field")

    try:
        parsed = AutoPolicySpec.model_validate(spec)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid spec: {e.errors()[0]['msg']}") from e

    if parsed.object_selector is not None:
        try:
            compile_to_query(parsed.object_selector)
        except InvalidSelectorError as e:
            raise ValidationError(f"Invalid objectSelector: {e.message}") from e

    template_spec = parsed.template.spec
    min_replicas = _replica_bound(template_spec, "minReplicas")
    max_replicas = _replica_bound(template_spec, "maxReplicas")
    if min_replicas is not None and max_replicas is not None and min_replicas > max_replicas:
        raise ValidationError("'minReplicas' cannot be greater than 'maxReplicas'")


def review(request: AdmissionRequest, expected: ResourceKind) -> AdmissionResponse:
    """Decide one admission request; the response always echoes the request uid."""
    kind = request.kind
    if (kind.group, kind.version, kind.kind) != (expected.group, expected.version, expected.kind):
        return deny(
            request.uid,
            f"Expected resource of type '{expected.api_version} {expected.kind}', got '{kind}'",
        )

    if request.operation == "DELETE":
        return AdmissionResponse(uid=request.uid, allowed=True)

    try:
        validate_policy_object(request.object)
    except ValidationError as e:
        return deny(request.uid, e.message)

    return AdmissionResponse(uid=request.uid, allowed=True)


def deny(uid: str, message: str) -> AdmissionResponse:
    return AdmissionResponse(uid=uid, allowed=False, status=AdmissionStatus(message=message))
