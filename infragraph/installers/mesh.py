"""
Istio + Knative.

Istio comes from the minimal install shipped in knative/serving's third_party
directory; GKE's Istio add-on breaks Knative Eventing
(https://github.com/knative/eventing/issues/2266). Knative Serving and
Eventing are installed through the Knative operator.
"""
from infragraph.installers.base import CustomResourceSpec, InstallContext, Installer
from infragraph.manifests import ManifestRef, resource_property
from infragraph.models.outputs import interpolate

KNATIVE_API_VERSION = "operator.knative.dev/v1alpha1"

INGRESS_GATEWAY = ("v1/Service", "istio-system", "istio-ingressgateway")


def _ingress_ip(ctx: InstallContext):
    api_kind, namespace, name = INGRESS_GATEWAY
    return resource_property(
        ctx.manifests["istio-minimal"].output(), api_kind, namespace, name,
        "status.loadBalancer.ingress.0.ip",
    )


def _domain(ctx: InstallContext):
    return interpolate("{}.xip.io", _ingress_ip(ctx))


def _custom_resources(serving_namespace: str, eventing_namespace: str):
    def _specs(ctx: InstallContext):
        domain = _domain(ctx)
        ctx.exports["domain"] = domain
        return [
            CustomResourceSpec(
                name="knative-serving",
                api_version=KNATIVE_API_VERSION,
                kind="KnativeServing",
                namespace=serving_namespace,
                spec={"config": {"domain": domain.apply(lambda d: {d: ""})}},
            ),
            CustomResourceSpec(
                name="knative-eventing",
                api_version=KNATIVE_API_VERSION,
                kind="KnativeEventing",
                namespace=eventing_namespace,
            ),
        ]

    return _specs


def istio_knative(
    name: str = "knative",
    serving_namespace: str = "knative-serving",
    eventing_namespace: str = "knative-eventing",
) -> Installer:
    """Istio then Knative; the endpoint is the Istio ingress gateway's load-balancer IP."""
    return Installer(
        name=name,
        namespaces=(serving_namespace, eventing_namespace),
        crds=(ManifestRef("istio-crds", "istio/istio-crds.yaml"),),
        manifests=(
            ManifestRef("istio-minimal", "istio/istio-minimal.yaml"),
            ManifestRef("knative-operator", "knative-operator/knative-operator.yaml"),
        ),
        custom_resources=_custom_resources(serving_namespace, eventing_namespace),
        endpoint=_ingress_ip,
    )
