"""
Stack configuration: a YAML file plus INFRAGRAPH_* environment overrides.

Every component receives the resulting StackConfig explicitly.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from infragraph.errors import ValidationError
from infragraph.materializer import ON_FAILURE_CHOICES, RetryPolicy

DEFAULT_OAUTH_SCOPES = (
    "https://www.googleapis.com/auth/compute",
    "https://www.googleapis.com/auth/devstorage.read_only",
    "https://www.googleapis.com/auth/logging.write",
    "https://www.googleapis.com/auth/monitoring",
)

_ENV_OVERRIDES = {
    "INFRAGRAPH_GCP_PROJECT": "project",
    "INFRAGRAPH_GCP_ZONE": "zone",
    "INFRAGRAPH_GCP_REGION": "region",
}


@dataclass(frozen=True)
class GcpConfig:
    project: str
    zone: str
    region: str = "us-central1"


@dataclass(frozen=True)
class ClusterConfig:
    initial_node_count: int = 3
    min_master_version: str = "1.16.8-gke.15"
    machine_type: str = "n1-standard-2"
    oauth_scopes: Tuple[str, ...] = DEFAULT_OAUTH_SCOPES
    tags: Tuple[str, ...] = ("infragraph",)
    master_username: str = "example-user"
    password_length: int = 20


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 1
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
        )


@dataclass(frozen=True)
class StackConfig:
    name: str
    gcp: GcpConfig
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    manifests_dir: str = "manifests"
    webhook_source_dir: str = "berglas-webhook"
    apps_namespace: str = "apps"
    max_workers: int = 4
    fail_fast: bool = True
    on_failure: str = "keep"
    retry: RetryConfig = field(default_factory=RetryConfig)

    @property
    def identity_namespace(self) -> str:
        """Workload identity pool of the project."""
        return f"{self.gcp.project}.svc.id.goog"


def _section(data: Mapping[str, Any], key: str) -> Dict[str, Any]:
    val = data.get(key) or {}
    if not isinstance(val, dict):
        raise ValidationError(f"config section '{key}' must be a mapping")
    return dict(val)


def _only(section: str, values: Dict[str, Any], allowed) -> None:
    unknown = sorted(set(values) - set(allowed))
    if unknown:
        raise ValidationError(f"unknown key(s) in '{section}': {', '.join(unknown)}")


def from_dict(data: Mapping[str, Any], env: Optional[Mapping[str, str]] = None,
              base_dir: str = "") -> StackConfig:
    env = os.environ if env is None else env
    if not isinstance(data, Mapping):
        raise ValidationError("stack config must be a mapping")

    gcp = _section(data, "gcp")
    for var, key in _ENV_OVERRIDES.items():
        if env.get(var):
            gcp[key] = env[var]
    _only("gcp", gcp, ("project", "zone", "region"))
    for required in ("project", "zone"):
        if not gcp.get(required):
            raise ValidationError(
                f"missing required configuration value 'gcp.{required}' "
                f"(set it in the stack file or INFRAGRAPH_GCP_{required.upper()})"
            )

    cluster = _section(data, "cluster")
    _only("cluster", cluster, ClusterConfig.__dataclass_fields__)
    for key in ("oauth_scopes", "tags"):
        if key in cluster:
            if not isinstance(cluster[key], (list, tuple)):
                raise ValidationError(f"cluster.{key} must be a list")
            cluster[key] = tuple(cluster[key])

    retry = _section(data, "retry")
    _only("retry", retry, RetryConfig.__dataclass_fields__)

    on_failure = data.get("on_failure", "keep")
    if on_failure not in ON_FAILURE_CHOICES:
        raise ValidationError(f"on_failure must be one of {', '.join(ON_FAILURE_CHOICES)}")

    fail_fast = data.get("fail_fast", True)
    if not isinstance(fail_fast, bool):
        raise ValidationError("fail_fast must be true or false")

    manifests_dir = data.get("manifests_dir", "manifests")
    webhook_dir = data.get("webhook_source_dir", "berglas-webhook")
    if base_dir:
        manifests_dir = os.path.join(base_dir, manifests_dir)
        webhook_dir = os.path.join(base_dir, webhook_dir)

    try:
        cfg = StackConfig(
            name=str(data.get("name") or "infragraph"),
            gcp=GcpConfig(**gcp),
            cluster=ClusterConfig(**cluster),
            manifests_dir=manifests_dir,
            webhook_source_dir=webhook_dir,
            apps_namespace=str(data.get("apps_namespace", "apps")),
            max_workers=int(data.get("max_workers", 4)),
            fail_fast=fail_fast,
            on_failure=on_failure,
            retry=RetryConfig(**retry),
        )
        cfg.retry.policy()
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"invalid stack config: {exc}") from exc
    return cfg


def load_config(path: str, env: Optional[Mapping[str, str]] = None) -> StackConfig:
    """Load a stack file. Relative directories in it resolve against the file's directory."""
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as exc:
        raise ValidationError(f"cannot read stack file {path}: {exc.strerror or exc}") from exc
    except yaml.YAMLError as exc:
        raise ValidationError(f"stack file {path} is not valid YAML: {exc}") from exc
    return from_dict(data, env=env, base_dir=os.path.dirname(os.path.abspath(path)))
