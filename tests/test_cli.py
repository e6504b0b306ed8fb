"""Tests for the offline plan/query commands and the argument parser."""

import textwrap
from unittest.mock import MagicMock

import pytest
import yaml
from autopolicy.cli.plan import PENDING_UID, load_manifests, load_policy, plan_command, plan_policy, query_command
from autopolicy.cli.run import run_command
from autopolicy.config import Settings
from autopolicy.core.errors import ExitCode, ValidationError
from autopolicy.kube import KubeClient
from autopolicy.main import build_parser, main
from autopolicy.models import DEFAULT_WORKLOAD_KINDS, AutoPolicy, ResourceKind
from kubernetes.dynamic.exceptions import ResourceNotFoundError

VPA = ResourceKind(
    group="autoscaling.k8s.io", version="v1", kind="VerticalPodAutoscaler", plural="verticalpodautoscalers"
)

POLICY_YAML = textwrap.dedent(
    """\
    apiVersion: autopolicy.dev/v1
    kind: AutoPolicy
    metadata:
      name: web
    spec:
      namespaceFilter: [prod]
      objectSelector:
        matchLabels:
          app: web
        matchExpressions:
          - key: tier
            operator: NotIn
            values: [batch]
      template:
        spec:
          updatePolicy:
            updateMode: Auto
    """
)

WORKLOADS_YAML = textwrap.dedent(
    """\
    apiVersion: apps/v1
    kind: Deployment
    metadata:
      name: web
      namespace: prod
      labels: {app: web}
    ---
    apiVersion: v1
    kind: List
    items:
      - apiVersion: apps/v1
        kind: StatefulSet
        metadata:
          name: web-cache
          namespace: prod
          labels: {app: web, tier: cache}
      - apiVersion: apps/v1
        kind: Deployment
        metadata:
          name: web
          namespace: staging
          labels: {app: web}
      - apiVersion: v1
        kind: ConfigMap
        metadata:
          name: web
          namespace: prod
          labels: {app: web}
      - apiVersion: batch/v1
        kind: Job
        metadata:
          name: web-backfill
          namespace: prod
          labels: {app: web, tier: batch}
    """
)


def load_policy_from_text(text):
    return AutoPolicy.from_dict({"kind": "AutoPolicy", **yaml.safe_load(text)})


@pytest.fixture
def policy_file(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text(POLICY_YAML)
    return path


@pytest.fixture
def workloads_file(tmp_path):
    path = tmp_path / "workloads.yaml"
    path.write_text(WORKLOADS_YAML)
    return path


class TestLoading:
    def test_load_manifests_expands_lists(self, workloads_file):
        manifests = load_manifests(workloads_file)
        assert [m["metadata"]["name"] for m in manifests] == ["web", "web-cache", "web", "web", "web-backfill"]

    def test_load_policy(self, policy_file):
        policy = load_policy(policy_file)
        assert policy.name == "web"
        assert policy.spec.namespace_filter == ["prod"]

    def test_load_policy_without_policy(self, workloads_file):
        with pytest.raises(ValidationError, match="No AutoPolicy found"):
            load_policy(workloads_file)


class TestPlanPolicy:
    def test_plans_matching_workloads(self, policy_file, workloads_file):
        result = plan_policy(
            load_policy(policy_file),
            load_manifests(workloads_file),
            workload_kinds=DEFAULT_WORKLOAD_KINDS,
            derived_kind=VPA,
        )

        assert result.query == "app=web,tier notin (batch)"
        assert [obj["metadata"]["name"] for obj in result.derived] == ["web-policy", "web-cache-policy"]
        assert result.matched == 2
        owner = result.derived[0]["metadata"]["ownerReferences"][0]
        assert owner["uid"] == PENDING_UID
        assert result.derived[1]["spec"]["targetRef"] == {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "name": "web-cache",
        }

    def test_absent_selector_plans_nothing(self, workloads_file):
        policy = load_policy_from_text("metadata: {name: idle}\nspec: {}\n")
        result = plan_policy(
            policy, load_manifests(workloads_file), workload_kinds=DEFAULT_WORKLOAD_KINDS, derived_kind=VPA
        )
        assert result.query is None
        assert result.derived == []

    def test_reports_skipped_workloads(self):
        policy = load_policy_from_text("metadata: {name: all}\nspec: {objectSelector: {}}\n")
        manifests = [{"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "orphan"}}]

        result = plan_policy(policy, manifests, workload_kinds=DEFAULT_WORKLOAD_KINDS, derived_kind=VPA)

        assert result.derived == []
        assert result.skipped == ["Missing required field: .metadata.namespace"]


class TestCommands:
    def test_plan_yaml_output(self, policy_file, workloads_file, capsys):
        code = plan_command(str(policy_file), str(workloads_file), output_format="yaml", settings=Settings())

        assert code == 0
        documents = list(yaml.safe_load_all(capsys.readouterr().out))
        assert [doc["metadata"]["name"] for doc in documents] == ["web-policy", "web-cache-policy"]
        assert all(doc["kind"] == "VerticalPodAutoscaler" for doc in documents)

    def test_plan_text_output(self, policy_file, workloads_file, capsys):
        code = plan_command(str(policy_file), str(workloads_file), settings=Settings())

        assert code == 0
        out = capsys.readouterr().out
        assert "Plan: web" in out
        assert "2 workload(s) matched" in out

    def test_plan_selector_override(self, policy_file, workloads_file, capsys):
        code = plan_command(
            str(policy_file), str(workloads_file), output_format="yaml", selector="tier=cache", settings=Settings()
        )

        assert code == 0
        documents = list(yaml.safe_load_all(capsys.readouterr().out))
        assert [doc["metadata"]["name"] for doc in documents] == ["web-cache-policy"]

    def test_plan_rejects_malformed_selector_override(self, policy_file):
        code = plan_command(str(policy_file), selector="env in (prod", settings=Settings())
        assert code == ExitCode.VALIDATION_ERROR

    def test_plan_missing_policy_is_a_validation_error(self, workloads_file):
        assert plan_command(str(workloads_file), settings=Settings()) == ExitCode.VALIDATION_ERROR

    def test_query(self, policy_file, capsys):
        assert query_command(str(policy_file), settings=Settings()) == 0
        assert capsys.readouterr().out.strip() == "app=web,tier notin (batch)"

    def test_query_rejects_invalid_selector(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(
            "kind: AutoPolicy\nmetadata: {name: bad}\n"
            "spec: {objectSelector: {matchExpressions: [{key: a, operator: Exists, values: [x]}]}}\n"
        )
        assert query_command(str(path), settings=Settings()) == ExitCode.VALIDATION_ERROR


class TestRunCommand:
    def test_missing_crd_exits_with_configuration_error(self, monkeypatch, capsys):
        dynamic = MagicMock()
        dynamic.resources.get.side_effect = ResourceNotFoundError(
            "No matches found for {'api_version': 'autopolicy.dev/v1', 'kind': 'AutoPolicy'}"
        )

        def make_client(**kwargs):
            client = KubeClient(**kwargs)
            client._dynamic = dynamic
            return client

        monkeypatch.setattr("autopolicy.cli.run.KubeClient", make_client)
        monkeypatch.setattr("autopolicy.cli.run.configure_logging", lambda level: None)

        assert run_command(settings=Settings()) == ExitCode.CONFIG_ERROR
        assert "AutoPolicy is not queryable" in capsys.readouterr().out


class TestParser:
    def test_plan_arguments(self):
        args = build_parser().parse_args(["plan", "policy.yaml", "--workloads", "w.yaml", "--output", "yaml"])
        assert args.command == "plan"
        assert args.policy_file == "policy.yaml"
        assert args.workloads_file == "w.yaml"
        assert args.output == "yaml"

    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1
        assert "usage: autopolicy" in capsys.readouterr().out

    def test_query_exit_code(self, policy_file):
        with pytest.raises(SystemExit) as exc_info:
            main(["query", str(policy_file)])
        assert exc_info.value.code == 0
