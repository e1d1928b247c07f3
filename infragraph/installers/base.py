"""
Generic operator installer.

An Installer is data: the namespaces it owns, the CRD and workload
manifests it applies, optional hooks that declare extra resources, the
custom resources it creates and how its endpoint is discovered. install()
turns that data into graph declarations, one step after another:

    namespaces -> CRDs -> workload -> custom resources -> endpoint

Every step depends on the resources of the step before it, so a failure
anywhere stops the rest of that installer.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from infragraph.backends.cluster import CUSTOM_RESOURCE_KIND, PROVIDER_KIND
from infragraph.config import StackConfig
from infragraph.errors import ValidationError
from infragraph.graph import ResourceGraph
from infragraph.identity import IdentityBinder
from infragraph.manifests import CONFIG_FILE_KIND, ManifestRef
from infragraph.models.resource import ResourceHandle

NAMESPACE_KIND = "k8s.core.v1.Namespace"


@dataclass(frozen=True)
class CustomResourceSpec:
    name: str
    api_version: str
    kind: str
    namespace: Optional[str] = None      # defaults to the installer's first namespace
    spec: Optional[Dict[str, Any]] = None


class InstallContext:
    """Working state handed to an installer's hooks while it declares resources."""

    def __init__(self, graph: ResourceGraph, config: StackConfig, name: str,
                 provider: ResourceHandle, binder: IdentityBinder, deps: Iterable[ResourceHandle]):
        self.graph = graph
        self.config = config
        self.name = name
        self.provider = provider
        self.binder = binder
        self.step_deps: List[ResourceHandle] = list(deps)
        self.namespaces: Dict[str, ResourceHandle] = {}
        self.manifests: Dict[str, ResourceHandle] = {}
        self.custom_resources: Dict[str, ResourceHandle] = {}
        self.resources: List[ResourceHandle] = []
        self.exports: Dict[str, Any] = {}

    @property
    def namespace(self) -> Optional[str]:
        return next(iter(self.namespaces), None)

    def namespace_ref(self, namespace: Optional[str] = None) -> Any:
        """Deferred name of a namespace owned by this install; a plain string otherwise."""
        namespace = namespace or self.namespace
        handle = self.namespaces.get(namespace)
        return handle.output("metadata.name") if handle else namespace

    def declare(self, kind: str, name: str, spec: Optional[Dict[str, Any]] = None,
                deps: Optional[Iterable[ResourceHandle]] = None, **kwargs: Any) -> ResourceHandle:
        """Declare a resource that depends on the current step (and on the cluster for k8s kinds)."""
        all_deps = list(self.step_deps if deps is None else deps)
        if kind.startswith("k8s.") and kind != PROVIDER_KIND and self.provider not in all_deps:
            all_deps.append(self.provider)
        handle = self.graph.declare(kind, name, spec, deps=all_deps, **kwargs)
        self.resources.append(handle)
        return handle

    def advance(self, handles: Sequence[ResourceHandle]) -> None:
        """Make ``handles`` the dependencies of everything declared from now on."""
        if handles:
            self.step_deps = list(handles)


@dataclass(frozen=True)
class InstallResult:
    name: str
    namespace: Optional[str]
    namespace_ref: Any                   # deferred namespace name, or the plain name
    endpoint: Any = None                 # deferred endpoint, None when not exposed
    resources: List[ResourceHandle] = field(default_factory=list)
    exports: Dict[str, Any] = field(default_factory=dict)


Hook = Callable[[InstallContext], None]
EndpointHook = Callable[[InstallContext], Any]
CustomResources = Union[Sequence[CustomResourceSpec], Callable[[InstallContext], Sequence[CustomResourceSpec]]]


@dataclass(frozen=True)
class Installer:
    name: str
    namespaces: Sequence[str] = ()
    crds: Sequence[ManifestRef] = ()
    manifests: Sequence[ManifestRef] = ()
    workload: Optional[Hook] = None
    custom_resources: CustomResources = ()
    endpoint: Optional[EndpointHook] = None

    def install(
        self,
        graph: ResourceGraph,
        config: StackConfig,
        provider: ResourceHandle,
        binder: IdentityBinder,
        deps: Iterable[ResourceHandle] = (),
        existing_namespaces: Optional[Mapping[str, ResourceHandle]] = None,
    ) -> InstallResult:
        if provider not in graph or provider.kind != PROVIDER_KIND:
            raise ValidationError(f"{self.name}: provider must be a declared {PROVIDER_KIND}")
        ctx = InstallContext(graph, config, self.name, provider, binder, deps)
        existing = dict(existing_namespaces or {})

        # 1. namespaces
        step = []
        for ns in self.namespaces:
            if ns in existing:
                ctx.namespaces[ns] = existing[ns]
            else:
                ctx.namespaces[ns] = ctx.declare(NAMESPACE_KIND, ns, {"metadata": {"name": ns}})
            step.append(ctx.namespaces[ns])
        ctx.advance(step)

        # 2. CRDs, applied side by side
        step = [self._apply(ctx, ref) for ref in self.crds]
        ctx.advance(step)

        # 3. workload: manifests in order, then whatever the hook declares
        step = []
        for ref in self.manifests:
            handle = self._apply(ctx, ref)
            step.append(handle)
            ctx.advance([handle])
        if self.workload is not None:
            before = len(ctx.resources)
            self.workload(ctx)
            step.extend(ctx.resources[before:])
        ctx.advance(step)

        # 4. custom resources
        specs = self.custom_resources(ctx) if callable(self.custom_resources) else self.custom_resources
        step = []
        for cr in specs:
            body: Dict[str, Any] = {
                "apiVersion": cr.api_version,
                "kind": cr.kind,
                "metadata": {"name": cr.name, "namespace": ctx.namespace_ref(cr.namespace)},
            }
            if cr.spec is not None:
                body["spec"] = cr.spec
            ctx.custom_resources[cr.name] = ctx.declare(CUSTOM_RESOURCE_KIND, cr.name, body)
            step.append(ctx.custom_resources[cr.name])
        ctx.advance(step)

        # 5. endpoint
        endpoint = self.endpoint(ctx) if self.endpoint is not None else None

        return InstallResult(
            name=self.name,
            namespace=ctx.namespace,
            namespace_ref=ctx.namespace_ref(),
            endpoint=endpoint,
            resources=list(ctx.resources),
            exports=dict(ctx.exports),
        )

    @staticmethod
    def _apply(ctx: InstallContext, ref: ManifestRef) -> ResourceHandle:
        resolved = ref.resolve(ctx.config.manifests_dir)
        handle = ctx.declare(CONFIG_FILE_KIND, ref.name, {"file": resolved.path})
        ctx.manifests[ref.name] = handle
        return handle

