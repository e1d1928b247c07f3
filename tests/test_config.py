"""
Stack configuration loading tests.
"""
import os

import pytest

from infragraph.config import from_dict, load_config
from infragraph.errors import ValidationError

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
STACK_FILE = os.path.join(FIXTURES, "stack.yaml")


class TestLoadConfig:
    def test_fixture_values(self):
        cfg = load_config(STACK_FILE, env={})
        assert cfg.name == "demo"
        assert cfg.gcp.project == "demo-project"
        assert cfg.gcp.zone == "us-central1-a"
        assert cfg.identity_namespace == "demo-project.svc.id.goog"
        assert cfg.retry.policy().max_attempts == 3

    def test_relative_dirs_resolve_against_stack_file(self):
        cfg = load_config(STACK_FILE, env={})
        assert cfg.manifests_dir == os.path.join(FIXTURES, "manifests")
        assert cfg.webhook_source_dir == os.path.join(FIXTURES, "berglas-webhook")

    def test_environment_overrides_file(self):
        cfg = load_config(STACK_FILE, env={"INFRAGRAPH_GCP_PROJECT": "other", "INFRAGRAPH_GCP_ZONE": "europe-west1-b"})
        assert cfg.gcp.project == "other"
        assert cfg.gcp.zone == "europe-west1-b"
        assert cfg.gcp.region == "us-central1"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_config(str(tmp_path / "missing.yaml"), env={})

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "stack.yaml"
        path.write_text("gcp: [unclosed\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            load_config(str(path), env={})


class TestFromDict:
    def test_defaults(self):
        cfg = from_dict({"gcp": {"project": "p", "zone": "z"}}, env={})
        assert cfg.name == "infragraph"
        assert cfg.cluster.initial_node_count == 3
        assert cfg.cluster.min_master_version == "1.16.8-gke.15"
        assert cfg.cluster.password_length == 20
        assert cfg.apps_namespace == "apps"
        assert cfg.on_failure == "keep"
        assert cfg.fail_fast is True
        assert cfg.retry.policy().max_attempts == 1

    @pytest.mark.parametrize("missing", ["project", "zone"])
    def test_required_gcp_values(self, missing):
        gcp = {"project": "p", "zone": "z"}
        del gcp[missing]
        with pytest.raises(ValidationError) as exc_info:
            from_dict({"gcp": gcp}, env={})
        assert f"gcp.{missing}" in str(exc_info.value)

    def test_required_values_from_environment(self):
        cfg = from_dict({}, env={"INFRAGRAPH_GCP_PROJECT": "p", "INFRAGRAPH_GCP_ZONE": "z"})
        assert (cfg.gcp.project, cfg.gcp.zone) == ("p", "z")

    def test_list_values_become_tuples(self):
        cfg = from_dict({"gcp": {"project": "p", "zone": "z"}, "cluster": {"tags": ["a", "b"]}}, env={})
        assert cfg.cluster.tags == ("a", "b")

    @pytest.mark.parametrize("data", [
        {"gcp": {"project": "p", "zone": "z", "colour": "blue"}},
        {"gcp": {"project": "p", "zone": "z"}, "cluster": {"nodes": 3}},
        {"gcp": {"project": "p", "zone": "z"}, "retry": {"attempts": 3}},
        {"gcp": {"project": "p", "zone": "z"}, "on_failure": "rollback"},
        {"gcp": {"project": "p", "zone": "z"}, "retry": {"max_attempts": 0}},
        {"gcp": {"project": "p", "zone": "z"}, "max_workers": "many"},
        {"gcp": {"project": "p", "zone": "z"}, "cluster": {"oauth_scopes": "cloud-platform"}},
        {"gcp": {"project": "p", "zone": "z"}, "cluster": {"tags": "infragraph"}},
        {"gcp": {"project": "p", "zone": "z"}, "fail_fast": "no"},
        {"gcp": "p"},
    ])
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ValidationError):
            from_dict(data, env={})

    def test_config_must_be_mapping(self):
        with pytest.raises(ValidationError):
            from_dict(["not", "a", "mapping"], env={})
