"""
Kubeconfig composition for GKE clusters.

GKE clusters authenticate through gcloud rather than client certificates,
so the generated user entry uses the "gcp" auth-provider with gcloud's
config-helper as the token source.
"""
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from jinja2 import Environment, StrictUndefined

from infragraph.errors import ValidationError

_KUBECONFIG_TEMPLATE = """\
apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: {{ ca }}
    server: https://{{ endpoint }}
  name: {{ context }}
contexts:
- context:
    cluster: {{ context }}
    user: {{ context }}
  name: {{ context }}
current-context: {{ context }}
kind: Config
preferences: {}
users:
- name: {{ context }}
  user:
    auth-provider:
      config:
        cmd-args: config config-helper --format=json
        cmd-path: gcloud
        expiry-key: '{.credential.token_expiry}'
        token-key: '{.credential.access_token}'
      name: gcp
"""

_env = Environment(autoescape=False, keep_trailing_newline=True, undefined=StrictUndefined)
_template = _env.from_string(_KUBECONFIG_TEMPLATE)

AuthMaterial = Union[str, Mapping[str, Any]]


@dataclass(frozen=True)
class CredentialBundle:
    cluster_name: str
    context: str
    server: str
    document: str

    def to_dict(self) -> Dict[str, Any]:
        return yaml.safe_load(self.document)

    def __str__(self) -> str:
        return self.document


def context_name(cluster_name: str, project: Optional[str] = None, zone: Optional[str] = None) -> str:
    if project and zone:
        return f"{project}_{zone}_{cluster_name}"
    return cluster_name


def _ca_data(auth: AuthMaterial) -> str:
    if isinstance(auth, str):
        return auth
    if isinstance(auth, Mapping):
        return auth.get("clusterCaCertificate") or ""
    raise ValidationError(f"unsupported auth material of type {type(auth).__name__}")


def compose(
    cluster_name: str,
    endpoint: str,
    auth: AuthMaterial,
    project: Optional[str] = None,
    zone: Optional[str] = None,
) -> CredentialBundle:
    """
    Build a kubeconfig for ``cluster_name``. ``auth`` is either the base64
    CA certificate or the cluster's masterAuth mapping. Identical inputs
    always produce an identical document.
    """
    if not cluster_name:
        raise ValidationError("cluster name is required")
    if not endpoint:
        raise ValidationError(f"cluster {cluster_name}: endpoint is required")
    ca = _ca_data(auth)
    if not ca:
        raise ValidationError(f"cluster {cluster_name}: certificate authority data is required")

    host = endpoint[len("https://"):] if endpoint.startswith("https://") else endpoint
    context = context_name(cluster_name, project, zone)
    document = _template.render(ca=ca, endpoint=host, context=context)
    return CredentialBundle(
        cluster_name=cluster_name,
        context=context,
        server=f"https://{host}",
        document=document,
    )
