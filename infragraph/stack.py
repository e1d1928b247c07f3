"""
Root composition: the GKE cluster and everything installed on it.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from infragraph.backends.cloud import InMemoryCloud
from infragraph.backends.cluster import PROVIDER_KIND, InMemoryCluster
from infragraph.backends.generators import RandomBackend
from infragraph.config import StackConfig
from infragraph.credentials import compose
from infragraph.graph import ResourceGraph
from infragraph.identity import IdentityBinder
from infragraph.installers import cicd, mesh, secrets, streaming
from infragraph.installers.base import InstallResult
from infragraph.materializer import Materializer, OutputStore
from infragraph.models.outputs import Derived

logger = logging.getLogger(__name__)

SECRET_EXPORTS = ("kubeconfig",)


@dataclass
class Stack:
    config: StackConfig
    graph: ResourceGraph
    exports: Dict[str, Any]
    installs: Dict[str, InstallResult] = field(default_factory=dict)

    def resolve_exports(self, store: OutputStore) -> Dict[str, Any]:
        return {name: store.resolve(value) for name, value in self.exports.items()}


def build(config: StackConfig, graph: Optional[ResourceGraph] = None) -> Stack:
    graph = graph if graph is not None else ResourceGraph()
    project = config.name
    cc = config.cluster

    # GKE cluster
    password = graph.declare("random.RandomPassword", f"{project}-password",
                             {"length": cc.password_length}, secret_outputs=("result",))
    cluster = graph.declare("gcp.container.Cluster", project, {
        "initialNodeCount": cc.initial_node_count,
        "minMasterVersion": cc.min_master_version,
        "location": config.gcp.zone,
        "nodeConfig": {
            "machineType": cc.machine_type,
            "oauthScopes": list(cc.oauth_scopes),
            "labels": {"instanceType": cc.machine_type},
            "tags": list(cc.tags),
            # Lets workload identity validate Pods.
            "workloadMetadataConfig": {"nodeMetadata": "GKE_METADATA_SERVER"},
        },
        "masterAuth": {"username": cc.master_username, "password": password.output("result")},
        # Kubernetes service accounts may act as GCP service accounts.
        "workloadIdentityConfig": {"identityNamespace": config.identity_namespace},
    }, secret_outputs=("masterAuth.password",))

    kubeconfig = Derived(
        lambda name, endpoint, auth: compose(
            name, endpoint, auth, project=config.gcp.project, zone=config.gcp.zone,
        ).document,
        (cluster.output("name"), cluster.output("endpoint"), cluster.output("masterAuth")),
    )

    provider = graph.declare(PROVIDER_KIND, f"{project}-gke", {"kubeconfig": kubeconfig}, deps=[cluster])

    # Namespace for application developers.
    apps = graph.declare("k8s.core.v1.Namespace", config.apps_namespace,
                         {"metadata": {"name": config.apps_namespace}}, deps=[provider])

    binder = IdentityBinder(graph, config)
    installs: Dict[str, InstallResult] = {}

    installs["berglas"] = secrets.berglas(config.apps_namespace).install(
        graph, config, provider, binder, deps=[cluster],
        existing_namespaces={config.apps_namespace: apps},
    )
    installs["strimzi"] = streaming.strimzi().install(graph, config, provider, binder, deps=[cluster])
    installs["knative"] = mesh.istio_knative().install(graph, config, provider, binder, deps=[cluster])
    installs["tekton"] = cicd.tekton().install(graph, config, provider, binder, deps=[cluster])

    exports = {
        "cluster_name": cluster.output("name"),
        "kubeconfig": kubeconfig,
        "apps_namespace_name": apps.output("metadata.name"),
        "berglas_webhook_endpoint": installs["berglas"].endpoint,
        "k8s_berglas_service_account_name": installs["berglas"].exports["service_account_name"],
        "kafka_endpoint": installs["strimzi"].endpoint,
        "istio_domain": installs["knative"].exports["domain"],
        "tekton_namespace_name": installs["tekton"].namespace_ref,
    }
    logger.debug("declared %d resources for stack %s", len(graph), project)
    return Stack(config=config, graph=graph, exports=exports, installs=installs)


def simulated_backends(config: StackConfig) -> Dict[str, Any]:
    """Backends that simulate GCP and the cluster in memory."""
    return {
        "gcp": InMemoryCloud(config.gcp.project, region=config.gcp.region, zone=config.gcp.zone),
        "k8s": InMemoryCluster(),
        "random": RandomBackend(),
    }


def materializer_for(config: StackConfig, backends: Dict[str, Any], **overrides: Any) -> Materializer:
    options = dict(
        retry=config.retry.policy(),
        max_workers=config.max_workers,
        fail_fast=config.fail_fast,
        on_failure=config.on_failure,
    )
    options.update(overrides)
    return Materializer(backends, **options)
