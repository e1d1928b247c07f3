"""
Tekton operator: CRDs, RBAC and the operator Deployment.
"""
from infragraph.installers.base import InstallContext, Installer
from infragraph.manifests import ManifestRef

OPERATOR_IMAGE = "metral/tekton-operator:v0.13.0"

_ALL = ["*"]
_CRUD = ["get", "create", "update", "delete"]
_MANAGE = ["get", "list", "create", "update", "delete", "patch", "watch"]

CLUSTER_ROLE_RULES = [
    {"apiGroups": [""], "verbs": _ALL, "resources": [
        "pods", "services", "endpoints", "persistentvolumeclaims", "events",
        "configmaps", "secrets", "pods/log", "limitranges",
    ]},
    {"apiGroups": ["extensions", "apps"], "resources": ["ingresses", "ingresses/status"],
     "verbs": ["delete", "create", "patch", "get", "list", "update", "watch"]},
    {"apiGroups": [""], "resources": ["namespaces"], "verbs": _MANAGE},
    {"apiGroups": ["apps"], "verbs": _ALL, "resources": [
        "deployments", "daemonsets", "replicasets", "statefulsets", "deployments/finalizers",
    ]},
    {"apiGroups": ["monitoring.coreos.com"], "resources": ["servicemonitors"],
     "verbs": ["get", "create", "delete"]},
    {"apiGroups": ["rbac.authorization.k8s.io"], "resources": ["clusterroles", "roles"], "verbs": _CRUD},
    {"apiGroups": [""], "resources": ["serviceaccounts"], "verbs": _MANAGE},
    {"apiGroups": ["rbac.authorization.k8s.io"], "resources": ["clusterrolebindings", "rolebindings"],
     "verbs": _CRUD},
    {"apiGroups": ["apiextensions.k8s.io"],
     "resources": ["customresourcedefinitions", "customresourcedefinitions/status"], "verbs": _MANAGE},
    {"apiGroups": ["admissionregistration.k8s.io"],
     "resources": ["mutatingwebhookconfigurations", "validatingwebhookconfigurations"], "verbs": _MANAGE},
    {"apiGroups": ["build.knative.dev"],
     "resources": ["builds", "buildtemplates", "clusterbuildtemplates"], "verbs": _MANAGE},
    {"apiGroups": ["extensions"], "resources": ["deployments"], "verbs": _MANAGE},
    {"apiGroups": ["extensions"], "resources": ["deployments/finalizers"], "verbs": _MANAGE},
    {"apiGroups": ["policy"], "resources": ["podsecuritypolicies"], "verbs": _CRUD + ["use"]},
    {"apiGroups": ["operator.tekton.dev"], "resources": ["*", "tektonaddons"], "verbs": _ALL},
    {"apiGroups": ["tekton.dev", "triggers.tekton.dev"], "resources": ["*"], "verbs": _ALL},
    {"apiGroups": ["dashboard.tekton.dev"], "resources": ["*", "tektonaddons"], "verbs": _ALL},
    {"apiGroups": ["security.openshift.io"], "resources": ["securitycontextconstraints"], "verbs": ["use"]},
    {"apiGroups": ["route.openshift.io"], "resources": ["routes"], "verbs": ["get", "list"]},
]


def _field_env(name: str, field_path: str) -> dict:
    return {"name": name, "valueFrom": {"fieldRef": {"fieldPath": field_path}}}


def _operator(image: str):
    def _declare(ctx: InstallContext) -> None:
        name = ctx.name
        namespace = ctx.namespace_ref()

        sa = ctx.declare("k8s.core.v1.ServiceAccount", name, {
            "metadata": {"name": name, "namespace": namespace},
        })
        role = ctx.declare("k8s.rbac.v1.ClusterRole", name, {
            "metadata": {"name": name},
            "rules": CLUSTER_ROLE_RULES,
        })
        ctx.declare("k8s.rbac.v1.ClusterRoleBinding", name, {
            "metadata": {"name": name},
            "subjects": [{
                "kind": "ServiceAccount",
                "name": sa.output("metadata.name"),
                "namespace": namespace,
            }],
            "roleRef": {
                "kind": "ClusterRole",
                "name": role.output("metadata.name"),
                "apiGroup": "rbac.authorization.k8s.io",
            },
        })
        ctx.declare("k8s.apps.v1.Deployment", name, {
            "metadata": {"name": name, "namespace": namespace},
            "spec": {
                "replicas": 1,
                "selector": {"matchLabels": {"name": name}},
                "template": {
                    "metadata": {"labels": {"name": name}},
                    "spec": {
                        "serviceAccountName": sa.output("metadata.name"),
                        "containers": [{
                            "name": name,
                            "image": image,
                            "command": ["tekton-operator"],
                            "imagePullPolicy": "Always",
                            "env": [
                                {"name": "WATCH_NAMESPACE", "value": ""},
                                _field_env("POD_NAME", "metadata.name"),
                                _field_env("OPERATOR_NAME", "metadata.name"),
                            ],
                        }],
                    },
                },
            },
        })
        ctx.exports["service_account_name"] = sa.output("metadata.name")

    return _declare


def tekton(name: str = "tekton", image: str = OPERATOR_IMAGE) -> Installer:
    """Tekton operator in a namespace of the same name. Exposes no endpoint."""
    return Installer(
        name=name,
        namespaces=(name,),
        crds=(
            ManifestRef("tekton-crd-pipelines", "tekton-operator/crds/operator_v1alpha1_pipeline_crd.yaml"),
            ManifestRef("tekton-crd-addons", "tekton-operator/crds/operator_v1alpha1_addon_crd.yaml"),
        ),
        workload=_operator(image),
    )
