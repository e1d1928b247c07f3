"""
In-memory simulation of the Google Cloud control plane.

Each supported resource type has a synthesizer that validates the submitted
spec the way the real API would and fills in the attributes the API
computes (endpoints, CA data, emails, trigger URLs).
"""
import base64
import logging
import threading
import zlib
from typing import Any, Callable, Dict, List, Tuple

from infragraph.backends.base import Backend, FaultInjector
from infragraph.errors import ExternalApiError

logger = logging.getLogger(__name__)

_ACCOUNT_ID_CHARS = set("abcdefghijklmnopqrstuvwxyz0123456789-")


def _require(kind: str, name: str, spec: Dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if spec.get(f) in (None, "", [])]
    if missing:
        raise ExternalApiError(400, f"{kind}:{name}: missing required field(s): {', '.join(missing)}")


def _pseudo_ip(seed: str, first_octet: int) -> str:
    h = zlib.crc32(seed.encode("utf-8"))
    return f"{first_octet}.{(h >> 16) & 0xFF}.{(h >> 8) & 0xFF}.{max(h & 0xFF, 1)}"


class InMemoryCloud(Backend):
    name = "gcp"

    def __init__(self, project: str, region: str = "us-central1", zone: str = ""):
        self.project = project
        self.region = region
        self.zone = zone
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.faults = FaultInjector()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ Backend
    def create(self, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        qn = f"{kind}:{name}"
        self._record("create", qn)
        self.faults.check(qn)

        synth = _SYNTHESIZERS.get(kind)
        if synth is None:
            raise ExternalApiError(400, f"unsupported resource type {kind}")

        with self._lock:
            if qn in self.objects:
                raise ExternalApiError(409, f"{qn} already exists")
            outputs = synth(self, kind, name, dict(spec))
            self.objects[qn] = outputs
        logger.debug("gcp: created %s", qn)
        return dict(outputs)

    def read(self, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        qn = f"{kind}:{spec.get('id', name)}"
        self._record("read", qn)
        self.faults.check(qn)
        with self._lock:
            if qn not in self.objects:
                raise ExternalApiError(404, f"{qn} not found", retryable=True)
            return dict(self.objects[qn])

    def delete(self, kind: str, name: str, outputs: Dict[str, Any]) -> None:
        qn = f"{kind}:{name}"
        self._record("delete", qn)
        self.faults.check(qn)
        with self._lock:
            if self.objects.pop(qn, None) is None:
                raise ExternalApiError(404, f"{qn} not found")
        logger.debug("gcp: deleted %s", qn)

    # ------------------------------------------------------------------ helpers
    def _record(self, op: str, qn: str) -> None:
        with self._lock:
            self.calls.append((op, qn))

    def names_of(self, kind: str) -> List[str]:
        with self._lock:
            return [qn.split(":", 1)[1] for qn in self.objects if qn.startswith(kind + ":")]

    def find_by(self, kind: str, field: str, value: Any) -> Dict[str, Any]:
        with self._lock:
            for qn, obj in self.objects.items():
                if qn.startswith(kind + ":") and obj.get(field) == value:
                    return obj
        return {}


# ---------------------------------------------------------------- synthesizers
def _cluster(cloud: InMemoryCloud, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    count = spec.get("initialNodeCount", 1)
    if not isinstance(count, int) or count < 1:
        raise ExternalApiError(400, f"{kind}:{name}: initialNodeCount must be >= 1")
    node_config = spec.get("nodeConfig") or {}
    if "workloadIdentityConfig" in spec:
        metadata = (node_config.get("workloadMetadataConfig") or {}).get("nodeMetadata")
        if metadata != "GKE_METADATA_SERVER":
            raise ExternalApiError(
                400, f"{kind}:{name}: workload identity requires nodeMetadata GKE_METADATA_SERVER"
            )
    location = spec.get("location") or cloud.zone or cloud.region
    cluster_name = spec.get("name") or name
    master_auth = dict(spec.get("masterAuth") or {})
    master_auth["clusterCaCertificate"] = base64.b64encode(
        f"ca:{cloud.project}:{cluster_name}".encode("utf-8")
    ).decode("ascii")
    return {
        **spec,
        "name": cluster_name,
        "location": location,
        "endpoint": _pseudo_ip(f"{cloud.project}/{cluster_name}", 35),
        "masterAuth": master_auth,
        "id": f"projects/{cloud.project}/locations/{location}/clusters/{cluster_name}",
    }


def _service_account(cloud: InMemoryCloud, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    _require(kind, name, spec, "accountId")
    account_id = spec["accountId"]
    if not 6 <= len(account_id) <= 30 or not set(account_id) <= _ACCOUNT_ID_CHARS:
        raise ExternalApiError(400, f"{kind}:{name}: invalid accountId {account_id!r}")
    project = spec.get("project") or cloud.project
    email = f"{account_id}@{project}.iam.gserviceaccount.com"
    return {
        **spec,
        "project": project,
        "email": email,
        "name": f"projects/{project}/serviceAccounts/{email}",
        "id": f"projects/{project}/serviceAccounts/{email}",
    }


def _project_binding(cloud: InMemoryCloud, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    _require(kind, name, spec, "role", "members")
    project = spec.get("project") or cloud.project
    return {**spec, "project": project, "etag": f"{zlib.crc32(name.encode()):08x}"}


def _account_binding(cloud: InMemoryCloud, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    _require(kind, name, spec, "serviceAccountId", "role", "members")
    account_id = spec["serviceAccountId"]
    if not cloud.find_by("gcp.serviceAccount.Account", "id", account_id):
        raise ExternalApiError(404, f"{kind}:{name}: service account {account_id} not found")
    return {**spec, "etag": f"{zlib.crc32(name.encode()):08x}"}


def _bucket(cloud: InMemoryCloud, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    bucket_name = spec.get("name") or f"{name}-{zlib.crc32(cloud.project.encode()):08x}"
    return {**spec, "name": bucket_name, "url": f"gs://{bucket_name}"}


def _bucket_object(cloud: InMemoryCloud, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    _require(kind, name, spec, "bucket", "source")
    if not cloud.find_by("gcp.storage.Bucket", "name", spec["bucket"]):
        raise ExternalApiError(404, f"{kind}:{name}: bucket {spec['bucket']} not found")
    object_name = spec.get("name") or name
    return {
        **spec,
        "name": object_name,
        "selfLink": f"https://www.googleapis.com/storage/v1/b/{spec['bucket']}/o/{object_name}",
    }


def _function(cloud: InMemoryCloud, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    _require(kind, name, spec, "runtime", "entryPoint", "sourceArchiveBucket", "sourceArchiveObject")
    region = spec.get("region") or cloud.region
    project = spec.get("project") or cloud.project
    function_name = spec.get("name") or name
    outputs = {**spec, "name": function_name, "region": region, "project": project}
    if spec.get("triggerHttp"):
        outputs["httpsTriggerUrl"] = f"https://{region}-{project}.cloudfunctions.net/{function_name}"
    return outputs


def _function_member(cloud: InMemoryCloud, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
    _require(kind, name, spec, "cloudFunction", "role", "member")
    return {**spec, "etag": f"{zlib.crc32(name.encode()):08x}"}


_Synth = Callable[[InMemoryCloud, str, str, Dict[str, Any]], Dict[str, Any]]

_SYNTHESIZERS: Dict[str, _Synth] = {
    "gcp.container.Cluster": _cluster,
    "gcp.serviceAccount.Account": _service_account,
    "gcp.projects.IAMBinding": _project_binding,
    "gcp.serviceAccount.IAMBinding": _account_binding,
    "gcp.storage.Bucket": _bucket,
    "gcp.storage.BucketObject": _bucket_object,
    "gcp.cloudfunctions.Function": _function,
    "gcp.cloudfunctions.FunctionIamMember": _function_member,
}
