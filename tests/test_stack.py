"""
End-to-end tests: the whole stack applied to the simulated backends.
"""
import os

import pytest

from infragraph.backends.cluster import PROVIDER_KIND
from infragraph.config import load_config
from infragraph.errors import ExternalApiError, MaterializationError
from infragraph.models.resource import ResourceState
from infragraph.stack import build, materializer_for, simulated_backends

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")

EXPORTS = {
    "cluster_name",
    "kubeconfig",
    "apps_namespace_name",
    "berglas_webhook_endpoint",
    "k8s_berglas_service_account_name",
    "kafka_endpoint",
    "istio_domain",
    "tekton_namespace_name",
}


class TestBuild:
    def setup_method(self):
        self.config = load_config(os.path.join(FIXTURES, "stack.yaml"), env={})
        self.stack = build(self.config)

    def test_exports_declared(self):
        assert set(self.stack.exports) == EXPORTS
        assert set(self.stack.installs) == {"berglas", "strimzi", "knative", "tekton"}

    def test_nothing_materialized_yet(self):
        assert {r.state for r in self.stack.graph} == {ResourceState.PENDING}

    def test_cluster_then_provider_then_kubernetes(self):
        order = self.stack.graph.topological_order()
        position = {h: i for i, h in enumerate(order)}
        cluster = self.stack.graph.find("gcp.container.Cluster", "demo")
        provider = self.stack.graph.find(PROVIDER_KIND, "demo-gke")
        assert position[cluster] < position[provider]
        for h in order:
            if h.backend == "k8s" and h != provider:
                assert position[provider] < position[h], h.qualified_name

    def test_cluster_password_is_generated(self):
        cluster = self.stack.graph.get(self.stack.graph.find("gcp.container.Cluster", "demo"))
        password = self.stack.graph.find("random.RandomPassword", "demo-password")
        assert password in cluster.dependencies
        assert "masterAuth.password" in cluster.secret_outputs


class TestApply:
    def setup_method(self):
        self.config = load_config(os.path.join(FIXTURES, "stack.yaml"), env={})
        self.stack = build(self.config)
        self.backends = simulated_backends(self.config)
        self.cloud = self.backends["gcp"]
        self.cluster = self.backends["k8s"]

    def apply(self, **overrides):
        self.materializer = materializer_for(self.config, self.backends, sleep=lambda s: None, **overrides)
        self.materializer.materialize(self.stack.graph)
        return self.stack.resolve_exports(self.materializer.store)

    def test_every_resource_ready(self):
        self.apply()
        assert {r.state for r in self.stack.graph} == {ResourceState.READY}

    def test_exports(self):
        exports = self.apply()
        gke = self.cloud.objects["gcp.container.Cluster:demo"]

        assert exports["cluster_name"] == "demo"
        assert f"server: https://{gke['endpoint']}" in exports["kubeconfig"]
        assert f"certificate-authority-data: {gke['masterAuth']['clusterCaCertificate']}" in exports["kubeconfig"]
        assert exports["apps_namespace_name"] == "apps"
        assert exports["berglas_webhook_endpoint"] == "https://us-central1-demo-project.cloudfunctions.net/berglas"
        assert exports["k8s_berglas_service_account_name"] == "berglas"
        assert exports["kafka_endpoint"].startswith("10.3.")
        assert exports["istio_domain"].startswith("34.120.")
        assert exports["istio_domain"].endswith(".xip.io")
        assert exports["tekton_namespace_name"] == "tekton"

    def test_provider_connects_to_cluster_endpoint(self):
        self.apply()
        gke = self.cloud.objects["gcp.container.Cluster:demo"]
        assert self.cluster.server == f"https://{gke['endpoint']}"

    def test_cluster_uses_generated_password(self):
        self.apply()
        gke = self.cloud.objects["gcp.container.Cluster:demo"]
        password = self.stack.graph.get(self.stack.graph.find("random.RandomPassword", "demo-password"))
        assert gke["masterAuth"]["password"] == password.outputs["result"]
        assert len(password.outputs["result"]) == self.config.cluster.password_length

    def test_transient_errors_retried(self):
        self.cloud.faults.fail("gcp.container.Cluster:demo",
                               ExternalApiError(503, "backend unavailable", retryable=True), times=2)
        self.apply()

        cluster = self.stack.graph.get(self.stack.graph.find("gcp.container.Cluster", "demo"))
        assert cluster.state == ResourceState.READY
        assert cluster.attempts == 3

    def test_failure_keeps_created_resources(self):
        self.cluster.faults.fail("k8s.apps.v1.Deployment:tekton", ExternalApiError(500, "boom"))

        with pytest.raises(MaterializationError):
            self.apply()

        assert "gcp.container.Cluster:demo" in self.cloud.objects
        assert self.cluster.get("v1", "Namespace", None, "tekton") is not None

    def test_teardown_removes_everything_created(self):
        self.cluster.faults.fail("k8s.apps.v1.Deployment:tekton", ExternalApiError(500, "boom"))

        with pytest.raises(MaterializationError) as exc_info:
            self.apply(on_failure="teardown")

        assert exc_info.value.resource == "k8s.apps.v1.Deployment:tekton"
        assert self.cloud.objects == {}
        remaining = {obj["metadata"]["name"] for obj in self.cluster.objects.values()}
        assert remaining == {"default", "kube-system", "kube-public"}
        assert self.cluster.server is None
        failed = [r.qualified_name for r in self.stack.graph if r.state == ResourceState.FAILED]
        assert failed == ["k8s.apps.v1.Deployment:tekton"]
        assert not any(r.state == ResourceState.READY for r in self.stack.graph)

    def test_destroy_after_apply(self):
        self.apply()
        destroyed = self.materializer.destroy(self.stack.graph)

        assert len(destroyed) == len(self.stack.graph)
        assert self.cloud.objects == {}
        assert len(self.cluster.objects) == 3
