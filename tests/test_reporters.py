"""
Report generator tests.
"""
import json
import os

from infragraph.config import load_config
from infragraph.models.outputs import SECRET_MASK
from infragraph.reporters import json_reporter, markdown
from infragraph.stack import build, materializer_for, simulated_backends

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


class TestMarkdownReport:
    def setup_method(self):
        self.stack = build(load_config(os.path.join(FIXTURES, "stack.yaml"), env={}))

    def test_lists_every_resource(self):
        report = markdown.build_report(self.stack.graph, None, "stack.yaml")
        for r in self.stack.graph:
            assert f"`{r.name}`" in report
        assert f"**{len(self.stack.graph)} resources** declared" in report

    def test_ascii_mode(self):
        report = markdown.build_report(self.stack.graph, None, "stack.yaml", ascii_mode=True)
        assert "[PENDING]" in report
        assert "⚪" not in report

    def test_mermaid_edges_follow_dependencies(self):
        chart = markdown.build_mermaid(self.stack.graph)
        assert chart.startswith("flowchart LR")
        assert "gcp_container_Cluster_demo --> k8s_Provider_demo_gke" in chart
        assert "subgraph Cloud" in chart
        assert "subgraph Cluster" in chart

    def test_outputs_section_after_apply(self):
        config = self.stack.config
        m = materializer_for(config, simulated_backends(config), sleep=lambda s: None)
        m.materialize(self.stack.graph)
        exports = self.stack.resolve_exports(m.store)

        report = markdown.build_report(self.stack.graph, exports, "stack.yaml")
        assert "Every resource is ready." in report
        assert "| `cluster_name` | `demo` |" in report
        # multi-line values are summarized
        assert "| `kubeconfig` | _" in report


class TestJsonReport:
    def setup_method(self):
        self.stack = build(load_config(os.path.join(FIXTURES, "stack.yaml"), env={}))

    def test_structure(self):
        data = json.loads(json_reporter.build_report(self.stack.graph, None, "stack.yaml"))
        assert data["meta"]["tool"] == "infragraph"
        assert data["meta"]["source"] == "stack.yaml"
        assert set(data["summary"]) == {"pending", "materializing", "ready", "failed"}
        assert len(data["resources"]) == len(self.stack.graph)

    def test_resources_in_materialization_order(self):
        data = json.loads(json_reporter.build_report(self.stack.graph, None, "stack.yaml"))
        seen = set()
        for r in data["resources"]:
            for dep in r["dependencies"]:
                assert dep in seen
            seen.add(f"{r['kind']}:{r['name']}")

    def test_secret_outputs_masked(self):
        config = self.stack.config
        m = materializer_for(config, simulated_backends(config), sleep=lambda s: None)
        m.materialize(self.stack.graph)

        data = json.loads(json_reporter.build_report(self.stack.graph, {}, "stack.yaml"))
        password = next(r for r in data["resources"] if r["kind"] == "random.RandomPassword")
        assert password["outputs"]["result"] == SECRET_MASK
        assert password["outputs"]["length"] == 20
        # the graph itself still holds the real value
        real = self.stack.graph.get(self.stack.graph.find("random.RandomPassword", "demo-password"))
        assert real.outputs["result"] != SECRET_MASK
