"""
Deferred values: references to resource outputs and values derived from them.

A spec may hold an OutputRef or a Derived anywhere inside nested dicts and
lists. Both are resolved only once every resource they point at is ready.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple, Union

from infragraph.errors import ValidationError
from infragraph.models.resource import ResourceHandle

SECRET_MASK = "[secret]"


@dataclass(frozen=True)
class OutputRef:
    handle: ResourceHandle
    path: str = ""

    def apply(self, fn: Callable[[Any], Any]) -> "Derived":
        return Derived(fn, (self,))

    def __str__(self) -> str:
        return f"{self.handle.qualified_name}.{self.path}" if self.path else self.handle.qualified_name


@dataclass(frozen=True)
class Derived:
    fn: Callable[..., Any]
    inputs: Tuple[Any, ...]

    def apply(self, fn: Callable[[Any], Any]) -> "Derived":
        return Derived(fn, (self,))


Deferred = Union[OutputRef, Derived]


def interpolate(template: str, *refs: Any) -> Derived:
    """Format ``template`` with the resolved values of ``refs`` ("{}" placeholders)."""
    return Derived(lambda *values: template.format(*values), tuple(refs))


def combine(*refs: Any) -> Derived:
    """Resolve several values at once into a tuple."""
    return Derived(lambda *values: tuple(values), tuple(refs))


def is_deferred(value: Any) -> bool:
    return isinstance(value, (OutputRef, Derived))


def get_path(data: Any, path: str, owner: str = "") -> Any:
    """
    Walk a dotted path through nested dicts and lists.
    Integer segments index into lists: "status.loadBalancer.ingress.0.ip".
    """
    if not path:
        return data
    current = data
    for segment in path.split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            where = f"{owner}.{path}" if owner else path
            raise ValidationError(f"output '{where}' does not exist")
    return current


def find_refs(value: Any) -> List[ResourceHandle]:
    """Collect every resource handle referenced anywhere in ``value``, in order."""
    found: List[ResourceHandle] = []

    def _walk(val: Any) -> None:
        if isinstance(val, OutputRef):
            if val.handle not in found:
                found.append(val.handle)
        elif isinstance(val, Derived):
            for item in val.inputs:
                _walk(item)
        elif isinstance(val, dict):
            for v in val.values():
                _walk(v)
        elif isinstance(val, (list, tuple)):
            for item in val:
                _walk(item)

    _walk(value)
    return found


def resolve(value: Any, lookup: Callable[[ResourceHandle], Dict[str, Any]]) -> Any:
    """
    Replace every OutputRef and Derived inside ``value`` with its concrete value.
    ``lookup`` returns the outputs of a ready resource, or raises
    DependencyUnresolved.
    """
    if isinstance(value, OutputRef):
        return get_path(lookup(value.handle), value.path, value.handle.qualified_name)
    if isinstance(value, Derived):
        return value.fn(*(resolve(item, lookup) for item in value.inputs))
    if isinstance(value, dict):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(item, lookup) for item in value]
    if isinstance(value, tuple):
        return tuple(resolve(item, lookup) for item in value)
    return value


def mask_paths(outputs: Dict[str, Any], paths: Tuple[str, ...]) -> Dict[str, Any]:
    """Return a copy of ``outputs`` with each dotted path replaced by SECRET_MASK."""
    if not paths:
        return outputs
    masked = _deep_copy(outputs)
    for path in paths:
        parts = path.split(".")
        node = masked
        for part in parts[:-1]:
            node = node.get(part) if isinstance(node, dict) else None
            if node is None:
                break
        if isinstance(node, dict) and parts[-1] in node:
            node[parts[-1]] = SECRET_MASK
    return masked


def _deep_copy(val: Any) -> Any:
    if isinstance(val, dict):
        return {k: _deep_copy(v) for k, v in val.items()}
    if isinstance(val, list):
        return [_deep_copy(v) for v in val]
    return val
