"""
Backend interface: the seam between the materializer and an external API.
"""
import abc
import threading
from typing import Any, Dict, List, Optional, Tuple

from infragraph.errors import ExternalApiError


class Backend(abc.ABC):
    """
    One backend owns every kind whose first segment equals ``name``
    ("gcp", "k8s", "random"). Implementations must be safe for concurrent
    use: the materializer calls them from several worker threads at once.
    """

    name: str = ""

    @abc.abstractmethod
    def create(self, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        """Submit the desired spec and return the output attributes."""

    def read(self, kind: str, name: str, spec: Dict[str, Any]) -> Dict[str, Any]:
        """Return the outputs of an object that already exists."""
        raise ExternalApiError(405, f"{self.name} backend cannot look up {kind}")

    def delete(self, kind: str, name: str, outputs: Dict[str, Any]) -> None:
        """Remove an object created earlier by create()."""


class FaultInjector:
    """
    Makes a backend fail on purpose. Used by the simulated backends so the
    materializer's failure handling can be exercised.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._faults: Dict[str, List[Tuple[Exception, Optional[int]]]] = {}

    def fail(self, qualified_name: str, error: Exception, times: Optional[int] = None) -> None:
        """Raise ``error`` for the next ``times`` calls on ``qualified_name`` (forever if None)."""
        with self._lock:
            self._faults.setdefault(qualified_name, []).append((error, times))

    def check(self, qualified_name: str) -> None:
        with self._lock:
            faults = self._faults.get(qualified_name)
            if not faults:
                return
            error, times = faults[0]
            if times is not None:
                if times <= 1:
                    faults.pop(0)
                else:
                    faults[0] = (error, times - 1)
        raise error
