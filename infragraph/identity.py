"""
Workload identity: let a Kubernetes service account act as a GCP service
account, and grant the GCP account project roles.

See https://cloud.google.com/kubernetes-engine/docs/how-to/workload-identity
"""
import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from infragraph.config import StackConfig
from infragraph.errors import ValidationError
from infragraph.graph import ResourceGraph
from infragraph.models.identity import IdentityBinding
from infragraph.models.outputs import interpolate
from infragraph.models.resource import ResourceHandle

GSA_KIND = "gcp.serviceAccount.Account"
KSA_KIND = "k8s.core.v1.ServiceAccount"
PROJECT_BINDING_KIND = "gcp.projects.IAMBinding"
ACCOUNT_BINDING_KIND = "gcp.serviceAccount.IAMBinding"
WORKLOAD_IDENTITY_ROLE = "roles/iam.workloadIdentityUser"

_ROLE_RE = re.compile(r"^(roles|projects/[^/]+/roles|organizations/[^/]+/roles)/[A-Za-z0-9_.]+$")


def _slug(role: str) -> str:
    # Predefined roles drop their "roles/" prefix; custom roles keep the
    # project or organization path so they cannot collide with them.
    if role.startswith("roles/"):
        role = role[len("roles/"):]
    return re.sub(r"[^a-z0-9]+", "-", role.lower()).strip("-")


class IdentityBinder:
    """
    Declares IAM binding records into a graph. Records are keyed by
    (identity, role), so asking for the same binding twice returns the
    record declared the first time.
    """

    def __init__(self, graph: ResourceGraph, config: StackConfig):
        self.graph = graph
        self.config = config
        self._records: Dict[Tuple[str, str], ResourceHandle] = {}

    def bind_roles(self, external_identity: ResourceHandle, roles: Sequence[str],
                   deps: Iterable[ResourceHandle] = ()) -> List[ResourceHandle]:
        """Grant a GCP service account each of ``roles`` on the project."""
        self._check(external_identity, GSA_KIND)
        deps = list(deps)
        records = []
        for role in roles:
            if not _ROLE_RE.match(role):
                raise ValidationError(f"invalid IAM role {role!r}")
            key = (external_identity.qualified_name, role)
            if key not in self._records:
                self._records[key] = self.graph.declare(
                    PROJECT_BINDING_KIND,
                    f"{external_identity.name}-iam-{_slug(role)}",
                    {
                        "project": self.config.gcp.project,
                        "role": role,
                        "members": [external_identity.output("email").apply(
                            lambda email: f"serviceAccount:{email}"
                        )],
                    },
                    deps=deps,
                )
            records.append(self._records[key])
        return records

    def bind_external_to_cluster(
        self,
        external_identity: ResourceHandle,
        cluster_identity: ResourceHandle,
        roles: Sequence[str],
        deps: Iterable[ResourceHandle] = (),
    ) -> IdentityBinding:
        """
        Grant ``external_identity`` (a GCP service account) the given roles and
        allow ``cluster_identity`` (a Kubernetes service account) to act as it.
        """
        self._check(cluster_identity, KSA_KIND)
        deps = list(deps)
        records = self.bind_roles(external_identity, roles, deps)

        key = (external_identity.qualified_name, f"{WORKLOAD_IDENTITY_ROLE}#{cluster_identity.qualified_name}")
        if key not in self._records:
            self._records[key] = self.graph.declare(
                ACCOUNT_BINDING_KIND,
                f"{external_identity.name}-wi-{cluster_identity.name}",
                {
                    "serviceAccountId": external_identity.output("id"),
                    "role": WORKLOAD_IDENTITY_ROLE,
                    "members": [interpolate(
                        "serviceAccount:{}[{}/{}]",
                        self.config.identity_namespace,
                        cluster_identity.output("metadata.namespace"),
                        cluster_identity.output("metadata.name"),
                    )],
                },
                deps=deps,
            )
        records.append(self._records[key])

        return IdentityBinding(
            external_identity=external_identity.qualified_name,
            cluster_identity=cluster_identity.qualified_name,
            roles=tuple(roles),
            records=tuple(records),
        )

    def _check(self, handle: Optional[ResourceHandle], kind: str) -> None:
        if not isinstance(handle, ResourceHandle) or handle.kind != kind:
            raise ValidationError(f"expected a {kind} handle, got {handle!r}")
        if handle not in self.graph:
            raise ValidationError(f"{handle} is not declared in this graph")
