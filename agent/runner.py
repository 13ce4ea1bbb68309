"""Triggering layer: decides *when* the engine runs, never *what* it does.

- WorkQueue: deduplicating queue of (program type, spec name) keys that
  never hands out a key already in flight, with per-key backoff
- Agent: watches declared specs, this node's Instances and the node
  itself; enqueues keys on every change and on a periodic resync; runs
  the engine for each key on a worker pool

Watches only enqueue keys. The engine always re-reads everything.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterator, Tuple

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from agent.cluster import ClusterReader
from agent.config import AgentConfig
from agent.engine import ConvergenceEngine
from agent.errors import StoreError
from agent.models import HOST_LABEL, INSTANCE_PLURAL, OWNER_LABEL, ProgramType, ReconcileResult

logger = logging.getLogger(__name__)

WorkKey = Tuple[ProgramType, str]

# Server-side watch timeout; the watch is re-established afterwards.
WATCH_TIMEOUT_SECONDS = 300


def format_key(key: WorkKey) -> str:
    return f"{key[0].value}/{key[1]}"


class WorkQueue:
    """Deduplicating work queue with per-key serialization.

    A key is handed to at most one worker at a time. Adding a key that is
    in flight marks it dirty; it is queued again once ``done`` is called.

    Args:
        base_delay: First retry delay after a failure, seconds.
        max_delay: Cap for the exponential retry delay, seconds.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_delay: float = base_delay
        self.max_delay: float = max_delay
        self._clock = clock
        self._cond: threading.Condition = threading.Condition()
        self._queue: deque[WorkKey] = deque()
        self._queued: set[WorkKey] = set()
        self._processing: set[WorkKey] = set()
        self._dirty: set[WorkKey] = set()
        self._delayed: list[tuple[float, int, WorkKey]] = []
        self._seq = itertools.count()
        self._failures: dict[WorkKey, int] = {}
        self._shutdown: bool = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _enqueue(self, key: WorkKey) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: WorkKey) -> None:
        with self._cond:
            if not self._shutdown:
                self._enqueue(key)

    def add_after(self, key: WorkKey, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._seq), key))
            self._cond.notify()

    def _promote_due(self) -> float | None:
        """Move due delayed keys into the queue; return seconds to the next one."""
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._enqueue(key)
        if self._delayed:
            return self._delayed[0][0] - now
        return None

    def get(self, timeout: float | None = None) -> WorkKey | None:
        """Next key to process, or None on shutdown or timeout.

        The caller must call ``done(key)`` when finished with it.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                next_due = self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key
                wait = next_due
                if deadline is not None:
                    left = deadline - self._clock()
                    if left <= 0:
                        return None
                    wait = left if wait is None else min(wait, left)
                self._cond.wait(wait)

    def done(self, key: WorkKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._enqueue(key)

    def backoff(self, key: WorkKey) -> float:
        """Record a failure for ``key`` and return its next retry delay."""
        with self._cond:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
        return min(self.base_delay * (2 ** (failures - 1)), self.max_delay)

    def forget(self, key: WorkKey) -> None:
        """Reset the backoff of a key that converged."""
        with self._cond:
            self._failures.pop(key, None)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


class Agent:
    """Per-node agent: watch, enqueue, reconcile.

    Args:
        config: Agent configuration (node name, workers, periods).
        engine: Convergence engine.
        cluster: Cluster reader for specs and the node.
        custom_api: Custom objects API client, used for watches.
        core_api: Core v1 API client, used for the node watch.
        queue: Work queue; one is built from ``config`` if omitted.
    """

    def __init__(
        self,
        config: AgentConfig,
        engine: ConvergenceEngine,
        cluster: ClusterReader,
        custom_api: client.CustomObjectsApi | None = None,
        core_api: client.CoreV1Api | None = None,
        queue: WorkQueue | None = None,
    ) -> None:
        self.config: AgentConfig = config
        self.engine: ConvergenceEngine = engine
        self.cluster: ClusterReader = cluster
        self.custom_api: client.CustomObjectsApi | None = custom_api
        self.core_api: client.CoreV1Api | None = core_api
        self.queue: WorkQueue = queue if queue is not None else WorkQueue(config.retry_delay, config.max_retry_delay)
        self._node_labels: dict[str, str] | None = None
        self._stop: threading.Event = threading.Event()

    # -- processing ------------------------------------------------------

    def process(self, key: WorkKey) -> ReconcileResult | None:
        """Run one engine invocation for ``key`` and schedule its follow-up.

        Returns:
            The engine result, or None if the spec no longer exists.
        """
        program_type, name = key
        try:
            spec = self.cluster.get_spec(program_type, name)
            if spec is None:
                logger.debug("%s is gone, dropping", format_key(key))
                self.queue.forget(key)
                return None
            node = self.cluster.get_node(self.config.node_name)
            result = self.engine.reconcile(spec, node)
        except StoreError as exc:
            logger.warning("Could not read %s, requeueing: %s", format_key(key), exc)
            result = ReconcileResult.REQUEUE
        except Exception:
            # A worker must outlive any single key.
            logger.exception("Reconciling %s failed unexpectedly, requeueing", format_key(key))
            result = ReconcileResult.REQUEUE

        self._schedule(key, result)
        return result

    def _schedule(self, key: WorkKey, result: ReconcileResult) -> None:
        if result is ReconcileResult.UPDATED:
            # The key is in flight, so this marks it dirty: it runs again
            # right after done().
            self.queue.add(key)
        elif result is ReconcileResult.REQUEUE:
            delay = self.queue.backoff(key)
            logger.debug("Requeueing %s in %.1fs", format_key(key), delay)
            self.queue.add_after(key, delay)
        else:
            self.queue.forget(key)

    def enqueue_all(self) -> int:
        """Queue every declared spec of every enabled type. Returns the count."""
        count = 0
        for program_type in self.config.program_types:
            try:
                specs = self.cluster.list_specs(program_type)
            except StoreError as exc:
                logger.warning("Resync of %s failed: %s", program_type.plural, exc)
                continue
            for spec in specs:
                self.queue.add((program_type, spec.name))
                count += 1
        return count

    def reconcile_once(self, max_passes: int = 10) -> dict[str, ReconcileResult]:
        """Converge every declared spec once, synchronously.

        Each spec is re-invoked while it reports UPDATED, up to
        ``max_passes`` times.

        Returns:
            Final result per spec key (``type/name``).
        """
        node = self.cluster.get_node(self.config.node_name)
        results: dict[str, ReconcileResult] = {}
        for program_type in self.config.program_types:
            for spec in self.cluster.list_specs(program_type):
                result = ReconcileResult.UPDATED
                for _ in range(max_passes):
                    current = self.cluster.get_spec(program_type, spec.name)
                    if current is None:
                        break
                    result = self.engine.reconcile(current, node)
                    if result is not ReconcileResult.UPDATED:
                        break
                results[format_key((program_type, spec.name))] = result
        return results

    # -- event handlers --------------------------------------------------

    def on_spec_event(self, program_type: ProgramType, event: dict[str, Any]) -> None:
        name = (event.get("object") or {}).get("metadata", {}).get("name")
        if name:
            self.queue.add((program_type, name))

    def on_instance_event(self, event: dict[str, Any]) -> None:
        obj = event.get("object") or {}
        owner = (obj.get("metadata", {}).get("labels") or {}).get(OWNER_LABEL)
        type_name = (obj.get("spec") or {}).get("type")
        if not owner or type_name not in {t.value for t in ProgramType}:
            return
        program_type = ProgramType(type_name)
        if program_type in self.config.program_types:
            self.queue.add((program_type, owner))

    def on_node_event(self, event: dict[str, Any]) -> None:
        node = event.get("object")
        labels = dict(getattr(getattr(node, "metadata", None), "labels", None) or {})
        if labels == self._node_labels:
            return
        if self._node_labels is not None:
            logger.info("Node %s labels changed, re-evaluating every spec", self.config.node_name)
            self.enqueue_all()
        self._node_labels = labels

    # -- run loop --------------------------------------------------------

    def _watch(self, name: str, stream: Callable[[], Iterator[dict[str, Any]]], handler: Callable[[dict[str, Any]], None]) -> None:
        while not self._stop.is_set():
            try:
                for event in stream():
                    if self._stop.is_set():
                        return
                    handler(event)
            except (ApiException, HTTPError) as exc:
                logger.warning("Watch on %s failed, restarting: %s", name, exc)
                self._stop.wait(self.config.retry_delay)

    def _stream_custom(self, plural: str, **kwargs: Any) -> Callable[[], Iterator[dict[str, Any]]]:
        def stream() -> Iterator[dict[str, Any]]:
            return watch.Watch().stream(
                self.custom_api.list_cluster_custom_object,
                self.config.api_group,
                self.config.api_version,
                plural,
                timeout_seconds=WATCH_TIMEOUT_SECONDS,
                **kwargs,
            )
        return stream

    def _stream_node(self) -> Iterator[dict[str, Any]]:
        return watch.Watch().stream(
            self.core_api.list_node,
            field_selector=f"metadata.name={self.config.node_name}",
            timeout_seconds=WATCH_TIMEOUT_SECONDS,
        )

    def _resync_loop(self) -> None:
        while not self._stop.is_set():
            count = self.enqueue_all()
            logger.debug("Resync queued %d spec(s)", count)
            self._stop.wait(self.config.resync_period)

    def _worker_loop(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def _start_thread(self, name: str, target: Callable[..., None], *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        return thread

    def run(self) -> None:
        """Run until ``stop()`` is called."""
        logger.info(
            "Agent starting on %s with %d worker(s) for %s",
            self.config.node_name,
            self.config.workers,
            ", ".join(t.value for t in self.config.program_types),
        )
        if self.custom_api is not None:
            for program_type in self.config.program_types:
                self._start_thread(
                    f"watch-{program_type.plural}",
                    self._watch,
                    program_type.plural,
                    self._stream_custom(program_type.plural),
                    lambda event, t=program_type: self.on_spec_event(t, event),
                )
            self._start_thread(
                "watch-bpfprograms",
                self._watch,
                INSTANCE_PLURAL,
                self._stream_custom(INSTANCE_PLURAL, label_selector=f"{HOST_LABEL}={self.config.node_name}"),
                self.on_instance_event,
            )
        if self.core_api is not None:
            self._start_thread("watch-node", self._watch, "node", self._stream_node, self.on_node_event)
        self._start_thread("resync", self._resync_loop)

        with ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="reconcile") as pool:
            for _ in range(self.config.workers):
                pool.submit(self._worker_loop)
            self._stop.wait()
            self.queue.shutdown()
        logger.info("Agent stopped")

    def stop(self) -> None:
        self._stop.set()
