from dataclasses import dataclass
from typing import Tuple

from infragraph.models.resource import ResourceHandle


@dataclass(frozen=True)
class IdentityBinding:
    external_identity: str                 # e.g. "gcp.serviceAccount.Account:berglas-sa"
    cluster_identity: str                  # e.g. "k8s.core.v1.ServiceAccount:berglas"
    roles: Tuple[str, ...]
    records: Tuple[ResourceHandle, ...]    # one per role, plus the workload-identity binding

    def to_dict(self) -> dict:
        return {
            "external_identity": self.external_identity,
            "cluster_identity": self.cluster_identity,
            "roles": list(self.roles),
            "records": [r.qualified_name for r in self.records],
        }
