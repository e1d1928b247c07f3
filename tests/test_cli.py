"""
CLI tests through click's CliRunner.
"""
import json
import os
import shutil
import subprocess
import sys

from click.testing import CliRunner

from infragraph.cli import cli
from infragraph.errors import InfragraphError
from infragraph.models.outputs import SECRET_MASK

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
STACK_FILE = os.path.join(FIXTURES, "stack.yaml")


class TestPlan:
    def setup_method(self):
        self.runner = CliRunner()

    def test_markdown_report(self, tmp_path):
        out = tmp_path / "plan.md"
        result = self.runner.invoke(cli, ["plan", STACK_FILE, "-o", str(out), "--no-color"])
        assert result.exit_code == 0, result.output
        report = out.read_text(encoding="utf-8")
        assert report.startswith("# Materialization Report")
        assert "Nothing has been materialized yet" in report
        assert "flowchart LR" in report

    def test_json_report_lists_pending_resources(self, tmp_path):
        out = tmp_path / "plan.json"
        result = self.runner.invoke(cli, ["plan", STACK_FILE, "--format", "json", "-o", str(out)])
        assert result.exit_code == 0, result.output
        data = json.loads(out.read_text(encoding="utf-8"))
        assert data["summary"]["pending"] == len(data["resources"])
        assert data["resources"][0]["kind"] == "random.RandomPassword"
        assert data["exports"] == {}

    def test_summary_writes_no_report(self, tmp_path):
        out = tmp_path / "plan.md"
        result = self.runner.invoke(cli, ["plan", STACK_FILE, "--summary", "-o", str(out)])
        assert result.exit_code == 0, result.output
        assert not out.exists()

    def test_missing_stack_file_is_config_error(self, tmp_path):
        result = self.runner.invoke(cli, ["plan", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 2


class TestApply:
    def setup_method(self):
        self.runner = CliRunner()

    def test_apply_exports(self, tmp_path):
        out = tmp_path / "apply.json"
        result = self.runner.invoke(cli, ["apply", STACK_FILE, "--format", "json", "-o", str(out)])
        assert result.exit_code == 0, result.output
        data = json.loads(out.read_text(encoding="utf-8"))
        assert data["summary"]["ready"] == len(data["resources"])
        assert data["exports"]["cluster_name"] == "demo"
        assert data["exports"]["tekton_namespace_name"] == "tekton"
        assert data["exports"]["kubeconfig"] == SECRET_MASK

    def test_apply_masks_password_outputs(self, tmp_path):
        out = tmp_path / "apply.json"
        result = self.runner.invoke(cli, ["apply", STACK_FILE, "--format", "json", "-o", str(out)])
        assert result.exit_code == 0, result.output
        resources = {r["name"]: r for r in json.loads(out.read_text(encoding="utf-8"))["resources"]}
        assert resources["demo-password"]["outputs"]["result"] == SECRET_MASK
        assert resources["demo"]["outputs"]["masterAuth"]["password"] == SECRET_MASK

    def test_show_secrets(self, tmp_path):
        out = tmp_path / "apply.json"
        result = self.runner.invoke(
            cli, ["apply", STACK_FILE, "--format", "json", "--show-secrets", "--workers", "2", "-o", str(out)],
        )
        assert result.exit_code == 0, result.output
        kubeconfig = json.loads(out.read_text(encoding="utf-8"))["exports"]["kubeconfig"]
        assert kubeconfig.startswith("apiVersion: v1")

    def test_failed_apply_exits_one(self, tmp_path):
        stack = tmp_path / "stack.yaml"
        stack.write_text(
            "name: broken\n"
            "gcp:\n  project: demo-project\n  zone: us-central1-a\n"
            "manifests_dir: no-such-dir\n",
            encoding="utf-8",
        )
        out = tmp_path / "apply.md"
        result = self.runner.invoke(cli, ["apply", str(stack), "--ascii", "-o", str(out)])
        assert result.exit_code == 1, result.output
        report = out.read_text(encoding="utf-8")
        assert "[FAILED]" in report
        assert "## Failures" in report
        assert "left in place" in report

    def test_teardown_reported(self, tmp_path):
        stack = tmp_path / "stack.yaml"
        stack.write_text(
            "name: broken\n"
            "gcp:\n  project: demo-project\n  zone: us-central1-a\n"
            "manifests_dir: no-such-dir\n",
            encoding="utf-8",
        )
        out = tmp_path / "apply.md"
        result = self.runner.invoke(cli, ["apply", str(stack), "--on-failure", "teardown", "-o", str(out)])
        assert result.exit_code == 1, result.output
        assert "torn down" in out.read_text(encoding="utf-8")

    def test_unresolvable_export_still_reports(self, tmp_path):
        shutil.copytree(os.path.join(FIXTURES, "manifests"), tmp_path / "manifests")
        # no istio-ingressgateway Service, so the Knative domain cannot be derived
        (tmp_path / "manifests" / "istio" / "istio-minimal.yaml").write_text(
            "apiVersion: v1\nkind: Namespace\nmetadata:\n  name: istio-system\n",
            encoding="utf-8",
        )
        stack = tmp_path / "stack.yaml"
        stack.write_text(
            "name: gatewayless\n"
            "gcp:\n  project: demo-project\n  zone: us-central1-a\n"
            "manifests_dir: manifests\n",
            encoding="utf-8",
        )
        out = tmp_path / "apply.json"
        result = self.runner.invoke(cli, ["apply", str(stack), "--format", "json", "-o", str(out)])
        assert result.exit_code == 1, result.output
        assert not isinstance(result.exception, InfragraphError)
        data = json.loads(out.read_text(encoding="utf-8"))
        assert "istio_domain" not in data["exports"]
        assert data["exports"]["cluster_name"] == "demo"

    def test_invalid_config_exits_two(self, tmp_path):
        stack = tmp_path / "stack.yaml"
        stack.write_text("gcp:\n  zone: us-central1-a\n", encoding="utf-8")
        result = self.runner.invoke(cli, ["apply", str(stack)], env={"INFRAGRAPH_GCP_PROJECT": ""})
        assert result.exit_code == 2


class TestKubeconfig:
    def test_prints_document(self):
        result = CliRunner().invoke(cli, ["kubeconfig", "demo", "1.2.3.4", "QUJD"])
        assert result.exit_code == 0, result.output
        assert "server: https://1.2.3.4" in result.output
        assert "certificate-authority-data: QUJD" in result.output

    def test_context_uses_project_and_zone(self):
        result = CliRunner().invoke(cli, ["kubeconfig", "demo", "1.2.3.4", "QUJD",
                                          "--project", "p", "--zone", "z"])
        assert "current-context: p_z_demo" in result.output

    def test_empty_ca_rejected(self):
        result = CliRunner().invoke(cli, ["kubeconfig", "demo", "1.2.3.4", ""])
        assert result.exit_code == 2


def test_module_entry_point():
    proc = subprocess.run(
        [sys.executable, "-m", "infragraph", "--help"],
        capture_output=True, text=True, check=False,
    )
    assert proc.returncode == 0
    assert "plan" in proc.stdout
    assert "apply" in proc.stdout
