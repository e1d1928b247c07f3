"""
Materializer: walks a ResourceGraph and submits each resource to its backend
once every dependency is ready.
"""
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from infragraph.backends.base import Backend
from infragraph.errors import (
    DependencyUnresolved,
    ExternalApiError,
    InfragraphError,
    MaterializationError,
    ValidationError,
)
from infragraph.graph import ResourceGraph
from infragraph.models.outputs import OutputRef, get_path, resolve
from infragraph.models.resource import Resource, ResourceHandle, ResourceState

logger = logging.getLogger(__name__)

ON_FAILURE_CHOICES = ("keep", "teardown")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff. Only ExternalApiError with retryable=True
    is retried; every other error fails the resource on the first attempt.
    """
    max_attempts: int = 1
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValidationError("retry max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0 or self.multiplier < 1:
            raise ValidationError("retry delays must be >= 0 and multiplier >= 1")

    def retrying(self, sleep: Callable[[float], None] = time.sleep) -> Retrying:
        """Delays run initial_delay, initial_delay * multiplier, ... capped at max_delay."""
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_delay, exp_base=self.multiplier, max=self.max_delay),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=sleep,
            reraise=True,
        )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ExternalApiError) and exc.retryable


class OutputStore:
    """
    One future per resource, resolved with its outputs when it becomes ready.
    Readers either fail fast (get) or block until the owner is ready (wait).
    """

    def __init__(self, graph: ResourceGraph):
        self._futures: Dict[ResourceHandle, Future] = {h: Future() for h in graph.handles()}

    def publish(self, handle: ResourceHandle, outputs: Dict[str, Any]) -> None:
        fut = self._future(handle)
        if fut.done():
            fut = self._futures[handle] = Future()
        fut.set_result(outputs)

    def fail(self, handle: ResourceHandle, error: BaseException) -> None:
        fut = self._future(handle)
        if not fut.done():
            fut.set_exception(error)

    def reset(self, handle: ResourceHandle) -> None:
        self._futures[handle] = Future()

    def is_ready(self, handle: ResourceHandle) -> bool:
        fut = self._future(handle)
        return fut.done() and fut.exception() is None

    def outputs(self, handle: ResourceHandle) -> Dict[str, Any]:
        if not self.is_ready(handle):
            raise DependencyUnresolved(handle.qualified_name)
        return self._future(handle).result()

    def get(self, ref: OutputRef) -> Any:
        return get_path(self.outputs(ref.handle), ref.path, ref.handle.qualified_name)

    def wait(self, ref: OutputRef, timeout: Optional[float] = None) -> Any:
        try:
            outputs = self._future(ref.handle).result(timeout=timeout)
        except MaterializationError:
            raise DependencyUnresolved(ref.handle.qualified_name, ref.path) from None
        except FutureTimeout:
            raise DependencyUnresolved(ref.handle.qualified_name, ref.path) from None
        return get_path(outputs, ref.path, ref.handle.qualified_name)

    def resolve(self, value: Any) -> Any:
        return resolve(value, self.outputs)

    def _future(self, handle: ResourceHandle) -> Future:
        try:
            return self._futures[handle]
        except KeyError:
            raise DependencyUnresolved(handle.qualified_name) from None


class Materializer:
    def __init__(
        self,
        backends: Mapping[str, Backend],
        retry: Optional[RetryPolicy] = None,
        max_workers: int = 4,
        fail_fast: bool = True,
        on_failure: str = "keep",
        sleep: Callable[[float], None] = time.sleep,
    ):
        if on_failure not in ON_FAILURE_CHOICES:
            raise ValidationError(f"on_failure must be one of {ON_FAILURE_CHOICES}, got {on_failure!r}")
        if max_workers < 1:
            raise ValidationError("max_workers must be >= 1")
        self.backends = dict(backends)
        self.retry = retry or RetryPolicy()
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.on_failure = on_failure
        self._sleep = sleep
        self.store: Optional[OutputStore] = None
        self.failures: List[MaterializationError] = []

    # ------------------------------------------------------------------ public
    def materialize(self, graph: ResourceGraph) -> Dict[ResourceHandle, Dict[str, Any]]:
        """
        Materialize every pending resource of ``graph`` in dependency order.

        Returns the outputs of every ready resource. Raises the first
        MaterializationError once in-flight work has settled.
        """
        order = graph.topological_order()
        self._check_backends(graph, order)
        store = self.store = OutputStore(graph)
        self.failures = []
        for handle in order:
            res = graph.get(handle)
            if res.state == ResourceState.READY:
                store.publish(handle, res.outputs)

        pending: List[ResourceHandle] = [h for h in order if graph.get(h).state != ResourceState.READY]
        failed: Set[ResourceHandle] = set()
        in_flight: Dict[Future, ResourceHandle] = {}
        stop = False

        logger.info("materializing %d resource(s)", len(pending))
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="infragraph") as pool:
            while pending or in_flight:
                if not stop:
                    for handle in list(pending):
                        deps = graph.dependencies(handle)
                        if any(d in failed for d in deps):
                            continue
                        if all(store.is_ready(d) for d in deps):
                            pending.remove(handle)
                            res = graph.get(handle)
                            res.state = ResourceState.MATERIALIZING
                            res.error = None
                            logger.info("materializing %s", handle.qualified_name)
                            in_flight[pool.submit(self._run, res, store)] = handle

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    handle = in_flight.pop(fut)
                    res = graph.get(handle)
                    if fut.cancelled():
                        res.state = ResourceState.PENDING
                        continue
                    exc = fut.exception()
                    if exc is None:
                        res.outputs = fut.result()
                        res.state = ResourceState.READY
                        store.publish(handle, res.outputs)
                        logger.info("ready %s", handle.qualified_name)
                        continue

                    error = exc if isinstance(exc, MaterializationError) else \
                        MaterializationError(handle.qualified_name, exc)
                    res.state = ResourceState.FAILED
                    res.error = str(error.cause) if error.cause is not None else str(error)
                    store.fail(handle, error)
                    failed.add(handle)
                    self.failures.append(error)
                    logger.error("failed %s: %s", handle.qualified_name, res.error)
                    if self.fail_fast and not stop:
                        stop = True
                        # Queued but not started yet; running work is left to finish.
                        queued = [f for f in in_flight if f.cancel()]
                        logger.warning(
                            "cancelling %d pending resource(s) after failure of %s",
                            len(pending) + len(queued), handle.qualified_name,
                        )

        if not self.failures:
            return {h: dict(graph.get(h).outputs) for h in order}

        skipped = [h.qualified_name for h in order if graph.get(h).state == ResourceState.PENDING]
        if skipped:
            logger.warning("not attempted: %s", ", ".join(skipped))
        if self.on_failure == "teardown":
            logger.warning("tearing down resources created before the failure")
            try:
                self.destroy(graph)
            except MaterializationError as exc:
                logger.error("teardown incomplete: %s", exc)
        raise self.failures[0]

    def destroy(self, graph: ResourceGraph) -> List[ResourceHandle]:
        """
        Delete every ready resource in reverse topological order and reset it
        to pending. Lookups are released without touching the backend.
        A failed delete leaves its resource ready and the walk carries on;
        the first such error is raised once every resource was visited.
        Returns the handles that were destroyed.
        """
        destroyed = []
        errors: List[MaterializationError] = []
        for handle in graph.reverse_order():
            res = graph.get(handle)
            if res.state != ResourceState.READY:
                continue
            if not res.lookup:
                logger.info("destroying %s", handle.qualified_name)
                try:
                    self._backend_for(handle).delete(handle.kind, handle.name, res.outputs)
                except InfragraphError as exc:
                    logger.error("failed to destroy %s: %s", handle.qualified_name, exc)
                    errors.append(MaterializationError(handle.qualified_name, exc))
                    continue
            res.state = ResourceState.PENDING
            res.outputs = {}
            if self.store is not None:
                self.store.reset(handle)
            destroyed.append(handle)
        if errors:
            raise errors[0]
        return destroyed

    # ------------------------------------------------------------------ internals
    def _check_backends(self, graph: ResourceGraph, order: List[ResourceHandle]) -> None:
        missing = sorted({h.backend for h in order if h.backend not in self.backends})
        if missing:
            raise ValidationError(f"no backend configured for: {', '.join(missing)}")

    def _backend_for(self, handle: ResourceHandle) -> Backend:
        return self.backends[handle.backend]

    def _run(self, res: Resource, store: OutputStore) -> Dict[str, Any]:
        handle = res.handle
        spec = store.resolve(res.spec)
        backend = self._backend_for(handle)
        call = backend.read if res.lookup else backend.create

        def _attempt() -> Dict[str, Any]:
            res.attempts += 1
            return call(handle.kind, handle.name, spec)

        res.attempts = 0
        try:
            return self.retry.retrying(self._sleep)(_attempt)
        except InfragraphError as exc:
            raise MaterializationError(handle.qualified_name, exc) from exc
