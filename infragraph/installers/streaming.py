"""
Strimzi Kafka operator plus a single-broker Kafka cluster.
"""
from infragraph.installers.base import CustomResourceSpec, InstallContext, Installer
from infragraph.manifests import ManifestRef
from infragraph.models.outputs import interpolate

KAFKA_VERSION = "2.5.0"

KAFKA_SPEC = {
    "kafka": {
        "version": KAFKA_VERSION,
        "replicas": 1,
        "listeners": {
            "plain": {},
            "tls": {},
        },
        "config": {
            "offsets.topic.replication.factor": 1,
            "transaction.state.log.replication.factor": 1,
            "transaction.state.log.min.isr": 1,
            "log.message.format.version": "2.5",
        },
        "storage": {
            "type": "jbod",
            "volumes": [{
                "id": 0,
                "type": "persistent-claim",
                "size": "100Gi",
                "deleteClaim": False,
            }],
        },
    },
    "zookeeper": {
        "replicas": 1,
        "storage": {
            "type": "persistent-claim",
            "size": "100Gi",
            "deleteClaim": False,
        },
    },
    "entityOperator": {
        "topicOperator": {},
        "userOperator": {},
    },
}


def _bootstrap_endpoint(cluster_name: str):
    def _resolve(ctx: InstallContext):
        kafka = ctx.custom_resources[cluster_name]
        # Strimzi creates "<cluster>-kafka-bootstrap" once it reconciles the Kafka resource.
        svc = ctx.declare("k8s.core.v1.Service", f"{cluster_name}-bootstrap-svc", {
            "id": interpolate("{}/{}-kafka-bootstrap", ctx.namespace_ref(), kafka.output("metadata.name")),
        }, lookup=True)
        return svc.output("spec.clusterIP")

    return _resolve


def strimzi(
    name: str = "strimzi",
    namespace: str = "kafka",
    operator_manifest: str = "strimzi-operator/strimzi-operator.yaml",
    cluster_name: str = "kafka-cluster",
) -> Installer:
    """Strimzi operator in ``namespace``; the endpoint is the Kafka bootstrap Service's cluster IP."""
    return Installer(
        name=name,
        namespaces=(namespace,),
        manifests=(ManifestRef("strimzi-operator", operator_manifest),),
        custom_resources=(
            CustomResourceSpec(
                name=cluster_name,
                api_version="kafka.strimzi.io/v1beta1",
                kind="Kafka",
                spec=KAFKA_SPEC,
            ),
        ),
        endpoint=_bootstrap_endpoint(cluster_name),
    )
