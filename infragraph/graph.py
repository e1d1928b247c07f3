"""
Resource graph: declared resources plus their dependency edges.
"""
import heapq
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from infragraph.errors import CycleError, ValidationError
from infragraph.models.outputs import find_refs
from infragraph.models.resource import Resource, ResourceHandle

_KIND_RE = re.compile(r"^[a-z][a-z0-9]*(\.[A-Za-z0-9]+)+$")
_NAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9._/-]*[A-Za-z0-9])?$")


class ResourceGraph:
    """
    Directed acyclic graph of declared resources.

    Resources are declared in program order and can only depend on resources
    declared before them; edges added later through add_dependency() are
    checked for cycles.
    """

    def __init__(self) -> None:
        self._resources: Dict[Tuple[str, str], Resource] = {}
        self._dependents: Dict[ResourceHandle, List[ResourceHandle]] = {}

    # ------------------------------------------------------------------ declare
    def declare(
        self,
        kind: str,
        name: str,
        spec: Optional[Dict[str, Any]] = None,
        deps: Iterable[ResourceHandle] = (),
        lookup: bool = False,
        secret_outputs: Sequence[str] = (),
    ) -> ResourceHandle:
        if not isinstance(kind, str) or not _KIND_RE.match(kind):
            raise ValidationError(f"invalid resource kind {kind!r}")
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise ValidationError(f"invalid resource name {name!r} for kind {kind}")
        if spec is not None and not isinstance(spec, dict):
            raise ValidationError(f"spec of {kind}:{name} must be a mapping")
        if (kind, name) in self._resources:
            raise ValidationError(f"resource {kind}:{name} is already declared")

        handle = ResourceHandle(kind, name, len(self._resources))
        spec = dict(spec or {})

        dependencies: List[ResourceHandle] = []
        for dep in list(deps) + find_refs(spec):
            if dep == handle:
                raise CycleError([handle.qualified_name, handle.qualified_name])
            if not self._owns(dep):
                raise ValidationError(
                    f"{handle.qualified_name} depends on undeclared resource {dep}"
                )
            if dep not in dependencies:
                dependencies.append(self._canonical(dep))

        self._resources[(kind, name)] = Resource(
            handle=handle,
            spec=spec,
            dependencies=dependencies,
            lookup=lookup,
            secret_outputs=tuple(secret_outputs),
        )
        self._dependents[handle] = []
        for dep in dependencies:
            self._dependents[dep].append(handle)
        return handle

    def add_dependency(self, resource: ResourceHandle, dependency: ResourceHandle) -> None:
        """Add an edge ``resource -> dependency``; reject it if it would close a cycle."""
        for h in (resource, dependency):
            if not self._owns(h):
                raise ValidationError(f"unknown resource {h}")
        resource = self._canonical(resource)
        dependency = self._canonical(dependency)
        node = self._resources[(resource.kind, resource.name)]
        if dependency in node.dependencies:
            return

        path = self._path(dependency, resource)
        if path is not None:
            raise CycleError([resource.qualified_name] + [h.qualified_name for h in path])

        node.dependencies.append(dependency)
        self._dependents[dependency].append(resource)

    # ------------------------------------------------------------------ queries
    def get(self, handle: ResourceHandle) -> Resource:
        try:
            return self._resources[(handle.kind, handle.name)]
        except KeyError:
            raise ValidationError(f"unknown resource {handle}") from None

    def find(self, kind: str, name: str) -> Optional[ResourceHandle]:
        res = self._resources.get((kind, name))
        return res.handle if res else None

    def dependencies(self, handle: ResourceHandle) -> List[ResourceHandle]:
        return list(self.get(handle).dependencies)

    def dependents(self, handle: ResourceHandle) -> List[ResourceHandle]:
        self.get(handle)
        return list(self._dependents[self._canonical(handle)])

    def handles(self) -> List[ResourceHandle]:
        return [r.handle for r in self._resources.values()]

    def topological_order(self) -> List[ResourceHandle]:
        """
        Every resource comes after all of its dependencies. Among resources
        with no ordering constraint, declaration order wins.
        """
        indegree = {r.handle: len(r.dependencies) for r in self._resources.values()}
        heap = [(h.index, h) for h, n in indegree.items() if n == 0]
        heapq.heapify(heap)
        order: List[ResourceHandle] = []
        while heap:
            _, handle = heapq.heappop(heap)
            order.append(handle)
            for child in self._dependents[handle]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(heap, (child.index, child))
        if len(order) != len(indegree):
            # add_dependency() rejects cycles, so this is a broken invariant.
            stuck = [h.qualified_name for h, n in indegree.items() if n > 0]
            raise CycleError(stuck)
        return order

    def reverse_order(self) -> List[ResourceHandle]:
        """Destruction order: dependents before their dependencies."""
        return list(reversed(self.topological_order()))

    def __iter__(self) -> Iterator[Resource]:
        return iter(list(self._resources.values()))

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, handle: object) -> bool:
        return isinstance(handle, ResourceHandle) and self._owns(handle)

    # ------------------------------------------------------------------ helpers
    def _owns(self, handle: ResourceHandle) -> bool:
        return isinstance(handle, ResourceHandle) and (handle.kind, handle.name) in self._resources

    def _canonical(self, handle: ResourceHandle) -> ResourceHandle:
        return self._resources[(handle.kind, handle.name)].handle

    def _path(self, start: ResourceHandle, goal: ResourceHandle) -> Optional[List[ResourceHandle]]:
        """Depth-first search along dependency edges from start to goal."""
        stack: List[Tuple[ResourceHandle, List[ResourceHandle]]] = [(start, [start])]
        seen = set()
        while stack:
            node, path = stack.pop()
            if node == goal:
                return path
            if node in seen:
                continue
            seen.add(node)
            for dep in self._resources[(node.kind, node.name)].dependencies:
                stack.append((dep, path + [dep]))
        return None
