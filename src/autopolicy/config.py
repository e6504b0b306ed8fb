"""
Application settings using Pydantic.

Provides environment-based configuration loading with AUTOPOLICY_ prefix.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings

from autopolicy.models import DEFAULT_WORKLOAD_KINDS, ResourceKind


class Settings(BaseSettings):
    """Application settings."""

    # Kubernetes connection (in-cluster config is tried first)
    kubeconfig: str | None = None
    kube_context: str | None = None

    # AutoPolicy CRD
    policy_group: str = "autopolicy.dev"
    policy_version: str = "v1"
    policy_kind: str = "AutoPolicy"
    policy_plural: str = "autopolicies"

    # Derived autoscaling resource
    derived_group: str = "autoscaling.k8s.io"
    derived_version: str = "v1"
    derived_kind: str = "VerticalPodAutoscaler"
    derived_plural: str = "verticalpodautoscalers"
    derived_name_suffix: str = "policy"

    # Workload kinds watched and listed for every policy
    workload_kinds: list[ResourceKind] = Field(
        default_factory=lambda: list(DEFAULT_WORKLOAD_KINDS)
    )

    # Reconciliation
    field_manager: str = "autopolicy.dev"
    requeue_delay_seconds: float = 5.0
    max_concurrent_reconciles: int = 4
    watch_timeout_seconds: int = 300
    request_timeout_seconds: int = 30

    # Admission webhook
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8443
    webhook_certfile: str | None = None
    webhook_keyfile: str | None = None

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "AUTOPOLICY_"

    @property
    def policy_kind_ref(self) -> ResourceKind:
        return ResourceKind(
            group=self.policy_group,
            version=self.policy_version,
            kind=self.policy_kind,
            plural=self.policy_plural,
        )

    @property
    def derived_kind_ref(self) -> ResourceKind:
        return ResourceKind(
            group=self.derived_group,
            version=self.derived_version,
            kind=self.derived_kind,
            plural=self.derived_plural,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
