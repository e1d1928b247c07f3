"""
Berglas: secrets from GCP Secret Manager injected into Pods.

Berglas runs as a mutating admission webhook. The webhook handler is served
by a GCP Cloud Function (its source lives outside this repository); the
Kubernetes MutatingWebhookConfiguration points at the function's URL and
rewrites Pods to run berglas as their entrypoint.

Permissions:
- a GCP service account (GSA) allowed to read Secret Manager secrets;
- a Kubernetes service account (KSA) in the apps namespace, bound to the
  GSA through workload identity, for Pods that need secrets.

https://github.com/GoogleCloudPlatform/berglas/tree/master/examples/kubernetes
"""
from typing import Sequence

from infragraph.installers.base import InstallContext, Installer
from infragraph.models.outputs import interpolate

DEFAULT_ROLES = ("roles/secretmanager.secretAccessor",)

GSA_ANNOTATION = "iam.gke.io/gcp-service-account"


def _workload(roles: Sequence[str]):
    def _declare(ctx: InstallContext) -> None:
        name = ctx.name

        # GSA for the webhook to work with Secret Manager.
        suffix = ctx.declare("random.RandomString", f"{name}-account-suffix", {
            "length": 7,
            "special": False,
            "upper": False,
        })
        gsa = ctx.declare("gcp.serviceAccount.Account", f"{name}-sa", {
            "project": ctx.config.gcp.project,
            "accountId": interpolate(name + "-{}", suffix.output("result")),
            "displayName": "Kubernetes Berglas",
        })

        # KSA for Pods in the apps namespace, acting as the GSA.
        ksa = ctx.declare("k8s.core.v1.ServiceAccount", name, {
            "metadata": {
                "name": name,
                "namespace": ctx.namespace_ref(),
                "annotations": {GSA_ANNOTATION: gsa.output("email")},
            },
        })
        binding = ctx.binder.bind_external_to_cluster(gsa, ksa, roles, deps=ctx.step_deps)
        ctx.resources.extend(h for h in binding.records if h not in ctx.resources)

        # Cloud Function serving the webhook handler.
        bucket = ctx.declare("gcp.storage.Bucket", name)
        source = ctx.declare("gcp.storage.BucketObject", f"{name}-source", {
            "bucket": bucket.output("name"),
            "source": ctx.config.webhook_source_dir,
        })
        function = ctx.declare("gcp.cloudfunctions.Function", name, {
            "sourceArchiveBucket": bucket.output("name"),
            "sourceArchiveObject": source.output("name"),
            "runtime": "go111",
            "entryPoint": "F",
            "triggerHttp": True,
            "availableMemoryMb": 128,
            "region": ctx.config.gcp.region,
        })
        ctx.declare("gcp.cloudfunctions.FunctionIamMember", f"{name}-invoker", {
            "project": function.output("project"),
            "region": function.output("region"),
            "cloudFunction": function.output("name"),
            "role": "roles/cloudfunctions.invoker",
            "member": "allUsers",
        })

        # Admission webhook that mutates Pods through the function.
        ctx.declare("k8s.admissionregistration.v1beta1.MutatingWebhookConfiguration", name, {
            "metadata": {
                "name": name,
                "annotations": {GSA_ANNOTATION: gsa.output("email")},
            },
            "webhooks": [{
                "admissionReviewVersions": ["v1beta1"],
                "name": f"{name}-webhook.cloud.google.com",
                "clientConfig": {
                    "url": function.output("httpsTriggerUrl"),
                    "caBundle": "",
                },
                "rules": [{
                    "operations": ["CREATE"],
                    "apiGroups": [""],
                    "apiVersions": ["v1"],
                    "resources": ["pods"],
                    "scope": "Namespaced",
                }],
                "sideEffects": "None",
            }],
        })

        ctx.exports["function"] = function
        ctx.exports["service_account_name"] = ksa.output("metadata.name")
        ctx.exports["gcp_service_account_email"] = gsa.output("email")
        ctx.exports["identity_binding"] = binding

    return _declare


def berglas(namespace: str, name: str = "berglas", roles: Sequence[str] = DEFAULT_ROLES) -> Installer:
    """Berglas webhook installer for Pods in ``namespace``."""
    return Installer(
        name=name,
        namespaces=(namespace,),
        workload=_workload(tuple(roles)),
        endpoint=lambda ctx: ctx.exports["function"].output("httpsTriggerUrl"),
    )
