from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from infragraph.models.outputs import OutputRef


class ResourceState(str, Enum):
    PENDING       = "pending"
    MATERIALIZING = "materializing"
    READY         = "ready"
    FAILED        = "failed"


@dataclass(frozen=True)
class ResourceHandle:
    kind: str                              # e.g. "gcp.container.Cluster", "k8s.core.v1.Namespace"
    name: str                              # logical name, unique per kind
    index: int = field(default=0, compare=False)   # declaration order

    @property
    def backend(self) -> str:
        return self.kind.split(".", 1)[0]

    @property
    def type_name(self) -> str:
        """Kind without the backend prefix, e.g. "container.Cluster"."""
        return self.kind.split(".", 1)[1] if "." in self.kind else self.kind

    @property
    def qualified_name(self) -> str:
        return f"{self.kind}:{self.name}"

    def output(self, path: str = "") -> "OutputRef":
        from infragraph.models.outputs import OutputRef
        return OutputRef(self, path)

    def __str__(self) -> str:
        return self.qualified_name


@dataclass
class Resource:
    handle: ResourceHandle
    spec: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[ResourceHandle] = field(default_factory=list)
    lookup: bool = False                   # read an existing object instead of creating one
    secret_outputs: Tuple[str, ...] = ()   # output paths masked in reports
    state: ResourceState = ResourceState.PENDING
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    attempts: int = 0

    @property
    def kind(self) -> str:
        return self.handle.kind

    @property
    def name(self) -> str:
        return self.handle.name

    @property
    def qualified_name(self) -> str:
        return self.handle.qualified_name
