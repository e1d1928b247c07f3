"""
In-memory simulation of a Kubernetes API server.

Objects are stored by (apiVersion, kind, namespace, name). The simulation
enforces what matters for ordering: a connection (k8s.Provider) must exist,
namespaced objects need their namespace, custom resources need their CRD,
and duplicates conflict. Reconcilers stand in for operators that create
objects of their own in response to a custom resource.
"""
import logging
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from infragraph.backends.base import Backend, FaultInjector
from infragraph.errors import ExternalApiError, ValidationError
from infragraph.manifests import CONFIG_FILE_KIND, load_manifest

logger = logging.getLogger(__name__)

PROVIDER_KIND = "k8s.Provider"
CUSTOM_RESOURCE_KIND = "k8s.apiextensions.CustomResource"

_API_GROUPS = {
    "core": "",
    "apps": "apps",
    "batch": "batch",
    "rbac": "rbac.authorization.k8s.io",
    "admissionregistration": "admissionregistration.k8s.io",
    "apiextensions": "apiextensions.k8s.io",
    "networking": "networking.k8s.io",
    "policy": "policy",
}

_CLUSTER_SCOPED = {
    "Namespace", "ClusterRole", "ClusterRoleBinding",
    "CustomResourceDefinition", "PersistentVolume",
    "MutatingWebhookConfiguration", "ValidatingWebhookConfiguration",
}

# Objects the API server creates for itself.
_BUILTIN_NAMESPACES = ("default", "kube-system", "kube-public")

Key = Tuple[str, str, str, str]
Reconciler = Callable[[Dict[str, Any]], List[Dict[str, Any]]]


def api_of(kind: str) -> Tuple[str, str]:
    """Map "k8s.rbac.v1.ClusterRole" to ("rbac.authorization.k8s.io/v1", "ClusterRole")."""
    parts = kind.split(".")
    if len(parts) != 4 or parts[0] != "k8s":
        raise ExternalApiError(400, f"unsupported resource type {kind}")
    _, group, version, obj_kind = parts
    if group not in _API_GROUPS:
        raise ExternalApiError(400, f"unknown API group {group!r} in {kind}")
    full_group = _API_GROUPS[group]
    return (f"{full_group}/{version}" if full_group else version), obj_kind


def strimzi_kafka(obj: Dict[str, Any]) -> List[Dict[str, Any]]:
    """The Strimzi operator exposes every Kafka cluster through a bootstrap Service."""
    meta = obj["metadata"]
    return [{
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": f"{meta['name']}-kafka-bootstrap",
            "namespace": meta["namespace"],
            "labels": {"strimzi.io/cluster": meta["name"]},
        },
        "spec": {
            "type": "ClusterIP",
            "ports": [
                {"name": "tcp-replication", "port": 9091},
                {"name": "tcp-clients", "port": 9092},
                {"name": "tcp-clientstls", "port": 9093},
            ],
        },
    }]


DEFAULT_RECONCILERS: Dict[str, Reconciler] = {
    "kafka.strimzi.io/Kafka": strimzi_kafka,
}


class InMemoryCluster(Backend):
    name = "k8s"

    def __init__(self, reconcilers: Optional[Dict[str, Reconciler]] = None):
        self.objects: Dict[Key, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.faults = FaultInjector()
        self.server: Optional[str] = None
        self.reconcilers = dict(DEFAULT_RECONCILERS if reconcilers is None else reconcilers)
        self._lock = threading.RLock()
        self._next_cluster_ip = 1
        self._next_lb_ip = 1
        for ns in _BUILTIN_NAMESPACES:
            self._store({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": ns}})

    # ------------------------------------------------------------------ Backend
    def create(self, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        qn = f"{kind}:{name}"
        self._record("create", qn)
        self.faults.check(qn)

        if kind == PROVIDER_KIND:
            return self._connect(name, spec)
        self._require_connection(qn)

        if kind == CONFIG_FILE_KIND:
            return self._apply_file(name, spec)
        return self._apply_all([self._to_object(kind, name, spec)])[0]

    def read(self, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        qn = f"{kind}:{name}"
        self._record("read", qn)
        self.faults.check(qn)
        self._require_connection(qn)

        api_version, obj_kind = api_of(kind)
        namespace, obj_name = self._lookup_id(name, spec, obj_kind)
        with self._lock:
            obj = self.objects.get((api_version, obj_kind, namespace, obj_name))
            if obj is None:
                where = f"{namespace}/{obj_name}" if namespace else obj_name
                # Operators create these asynchronously; a later attempt may succeed.
                raise ExternalApiError(404, f"{obj_kind} {where} not found", retryable=True)
            return _copy(obj)

    def delete(self, kind: str, name: str, outputs: Dict[str, Any]) -> None:
        qn = f"{kind}:{name}"
        self._record("delete", qn)
        self.faults.check(qn)
        if kind == PROVIDER_KIND:
            self.server = None
            return
        with self._lock:
            if kind == CONFIG_FILE_KIND:
                for obj in reversed(outputs.get("resources", [])):
                    self._remove(obj, missing_ok=True)
            else:
                self._remove(outputs, missing_ok=False)

    # ------------------------------------------------------------------ queries
    def get(self, api_version: str, kind: str, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            obj = self.objects.get((api_version, kind, namespace or "", name))
            return _copy(obj) if obj is not None else None

    def list_objects(self, kind: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                _copy(obj) for (_, k, ns, _), obj in self.objects.items()
                if k == kind and (namespace is None or ns == namespace)
            ]

    # ------------------------------------------------------------------ internals
    def _record(self, op: str, qn: str) -> None:
        with self._lock:
            self.calls.append((op, qn))

    def _connect(self, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        raw = spec.get("kubeconfig")
        if not raw:
            raise ExternalApiError(400, f"{PROVIDER_KIND}:{name}: kubeconfig is required")
        try:
            config = yaml.safe_load(raw)
            server = config["clusters"][0]["cluster"]["server"]
            context = config["current-context"]
        except (yaml.YAMLError, KeyError, IndexError, TypeError) as exc:
            raise ExternalApiError(400, f"{PROVIDER_KIND}:{name}: malformed kubeconfig ({exc})") from exc
        with self._lock:
            self.server = server
        logger.debug("k8s: connected to %s (%s)", server, context)
        return {"server": server, "context": context}

    def _require_connection(self, qn: str) -> None:
        if self.server is None:
            raise ExternalApiError(503, f"{qn}: no connection to a cluster", retryable=True)

    def _to_object(self, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        body = _copy(spec)
        if kind == CUSTOM_RESOURCE_KIND:
            if not body.get("apiVersion") or not body.get("kind"):
                raise ExternalApiError(400, f"{kind}:{name}: apiVersion and kind are required")
        else:
            body["apiVersion"], body["kind"] = api_of(kind)
        meta = body.setdefault("metadata", {})
        meta.setdefault("name", name)
        return body

    def _apply_file(self, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        path = spec.get("file")
        if not path:
            raise ExternalApiError(400, f"{CONFIG_FILE_KIND}:{name}: file is required")
        try:
            objects = load_manifest(path)
        except ValidationError as exc:
            raise ExternalApiError(400, str(exc)) from exc

        # CRDs first, then namespaces, so a single file can carry both
        # definitions and the objects that use them.
        applied = self._apply_all([_copy(obj) for obj in sorted(objects, key=_apply_rank)])
        return {"file": path, "resources": applied}

    def _apply_all(self, objects: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Apply every object or none: a failure removes what this call stored."""
        created: List[Key] = []
        with self._lock:
            try:
                return [self._apply(obj, created) for obj in objects]
            except ExternalApiError:
                for key in reversed(created):
                    self.objects.pop(key, None)
                if created:
                    logger.debug("k8s: rolled back %d object(s)", len(created))
                raise

    def _apply(self, obj: Dict[str, Any], created: List[Key]) -> Dict[str, Any]:
        meta = obj.setdefault("metadata", {})
        if not meta.get("name"):
            raise ExternalApiError(422, f"{obj['kind']}: metadata.name is required")

        if obj["kind"] in _CLUSTER_SCOPED:
            meta.pop("namespace", None)
        else:
            meta["namespace"] = meta.get("namespace") or "default"
            if ("v1", "Namespace", "", meta["namespace"]) not in self.objects:
                raise ExternalApiError(404, f"namespace {meta['namespace']} not found")

        if "/" in obj["apiVersion"] and not self._is_builtin_group(obj["apiVersion"]):
            if not self._crd_for(obj["apiVersion"], obj["kind"]):
                raise ExternalApiError(
                    404, f"no matches for kind {obj['kind']} in version {obj['apiVersion']}"
                )

        key = _key(obj)
        if key in self.objects:
            where = f"{key[2]}/{key[3]}" if key[2] else key[3]
            raise ExternalApiError(409, f"{obj['kind']} {where} already exists")

        if obj["kind"] == "Service":
            self._assign_addresses(obj)
        stored = self._store(obj)
        created.append(key)

        group_kind = f"{obj['apiVersion'].split('/')[0]}/{obj['kind']}"
        reconciler = self.reconcilers.get(group_kind)
        if reconciler is not None:
            for child in reconciler(_copy(stored)):
                self._apply(child, created)
        return _copy(stored)

    def _store(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        obj.setdefault("metadata", {})["uid"] = str(uuid.uuid4())
        self.objects[_key(obj)] = obj
        return obj

    def _remove(self, obj: Dict[str, Any], missing_ok: bool) -> None:
        key = _key(obj)
        if self.objects.pop(key, None) is None and not missing_ok:
            raise ExternalApiError(404, f"{key[1]} {key[3]} not found")
        if key[1] == "Namespace":
            for other in [k for k in self.objects if k[2] == key[3]]:
                del self.objects[other]

    def _assign_addresses(self, obj: Dict[str, Any]) -> None:
        spec = obj.setdefault("spec", {})
        svc_type = spec.get("type", "ClusterIP")
        if svc_type == "ExternalName":
            return
        if not spec.get("clusterIP"):
            spec["clusterIP"] = f"10.3.{self._next_cluster_ip // 250}.{self._next_cluster_ip % 250 + 1}"
            self._next_cluster_ip += 1
        if svc_type == "LoadBalancer":
            ip = f"34.120.{self._next_lb_ip // 250}.{self._next_lb_ip % 250 + 1}"
            self._next_lb_ip += 1
            obj["status"] = {"loadBalancer": {"ingress": [{"ip": ip}]}}

    def _is_builtin_group(self, api_version: str) -> bool:
        return api_version.split("/")[0] in set(_API_GROUPS.values())

    def _crd_for(self, api_version: str, kind: str) -> bool:
        group, _, version = api_version.partition("/")
        for (_, k, _, _), obj in self.objects.items():
            if k != "CustomResourceDefinition":
                continue
            spec = obj.get("spec") or {}
            if spec.get("group") != group or (spec.get("names") or {}).get("kind") != kind:
                continue
            versions = [v.get("name") for v in spec.get("versions") or []]
            if spec.get("version"):
                versions.append(spec["version"])
            if not versions or version in versions:
                return True
        return False

    @staticmethod
    def _lookup_id(name: str, spec: Dict[str, Any], kind: str) -> Tuple[str, str]:
        if spec.get("id"):
            ns, _, obj_name = str(spec["id"]).rpartition("/")
        else:
            meta = spec.get("metadata") or {}
            ns, obj_name = meta.get("namespace", ""), meta.get("name", name)
        if kind in _CLUSTER_SCOPED:
            return "", obj_name
        return ns or "default", obj_name


def _key(obj: Dict[str, Any]) -> Key:
    meta = obj.get("metadata") or {}
    return obj["apiVersion"], obj["kind"], meta.get("namespace") or "", meta["name"]


def _apply_rank(obj: Dict[str, Any]) -> int:
    return {"CustomResourceDefinition": 0, "Namespace": 1}.get(obj.get("kind"), 2)


def _copy(val: Any) -> Any:
    if isinstance(val, dict):
        return {k: _copy(v) for k, v in val.items()}
    if isinstance(val, list):
        return [_copy(v) for v in val]
    return val
