"""
Error taxonomy shared by the graph, the materializer and the backends.
"""
from typing import Optional, Sequence


class InfragraphError(Exception):
    """Base class for every error raised by infragraph."""


class ValidationError(InfragraphError):
    """A declaration or config field is malformed."""


class DependencyUnresolved(InfragraphError):
    """An output was read before the resource owning it became ready."""

    def __init__(self, qualified_name: str, path: str = ""):
        self.qualified_name = qualified_name
        self.path = path
        where = f"{qualified_name}.{path}" if path else qualified_name
        super().__init__(f"output '{where}' is not available: resource is not ready")


class ExternalApiError(InfragraphError):
    """A provider or cluster API rejected a request."""

    def __init__(self, status: int, message: str, retryable: bool = False):
        self.status = status
        self.message = message
        self.retryable = retryable
        super().__init__(f"[{status}] {message}")


class CycleError(InfragraphError):
    """Adding a dependency edge would make the graph cyclic."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__("dependency cycle: " + " -> ".join(self.cycle))


class MaterializationError(InfragraphError):
    """A resource could not be materialized."""

    def __init__(self, resource: str, cause: Optional[BaseException] = None):
        self.resource = resource
        self.cause = cause
        super().__init__(f"failed to materialize {resource}: {cause}")
