"""
Operator manifest files: opaque multi-document YAML applied verbatim.
"""
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml

from infragraph.errors import ValidationError
from infragraph.models.outputs import Derived, OutputRef, get_path

CONFIG_FILE_KIND = "k8s.yaml.ConfigFile"


@dataclass(frozen=True)
class ManifestRef:
    name: str     # resource name of the ConfigFile, e.g. "strimzi-operator"
    path: str     # file path, relative paths resolve against the manifests dir

    def resolve(self, base_dir: str) -> "ManifestRef":
        if os.path.isabs(self.path) or not base_dir:
            return self
        return ManifestRef(self.name, os.path.join(base_dir, self.path))


def load_manifest(path: str) -> List[Dict[str, Any]]:
    """
    Load every object in a manifest file. Empty documents are dropped;
    anything without apiVersion and kind is rejected.
    """
    try:
        with open(path, encoding="utf-8") as fh:
            docs = list(yaml.safe_load_all(fh))
    except OSError as exc:
        raise ValidationError(f"cannot read manifest {path}: {exc.strerror or exc}") from exc
    except yaml.YAMLError as exc:
        raise ValidationError(f"manifest {path} is not valid YAML: {exc}") from exc

    objects = []
    for i, doc in enumerate(docs):
        if doc is None:
            continue
        if not isinstance(doc, dict) or "apiVersion" not in doc or "kind" not in doc:
            raise ValidationError(f"manifest {path}: document {i} is not a Kubernetes object")
        objects.append(doc)
    return objects


def find_object(
    objects: List[Dict[str, Any]],
    api_kind: str,
    namespace: Optional[str],
    name: str,
) -> Dict[str, Any]:
    """Find an object by "apiVersion/Kind" ("v1/Service"), namespace and name."""
    for obj in objects:
        if f"{obj.get('apiVersion')}/{obj.get('kind')}" != api_kind:
            continue
        meta = obj.get("metadata") or {}
        if meta.get("name") == name and (meta.get("namespace") or None) == (namespace or None):
            return obj
    where = f"{namespace}/{name}" if namespace else name
    raise ValidationError(f"manifest has no {api_kind} {where}")


def resource_property(config_file: OutputRef, api_kind: str, namespace: Optional[str],
                      name: str, path: str) -> Derived:
    """Deferred property of one object applied by a ConfigFile resource."""
    def _pick(objects):
        return get_path(find_object(objects, api_kind, namespace, name), path, name)

    return Derived(_pick, (OutputRef(config_file.handle, "resources"),))
