"""Watch ModelDeployments and their children and dispatch them to the reconciler."""

from __future__ import annotations

import heapq
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from kubernetes import watch

from kaimera import types
from kaimera.control_plane import ControlPlane
from kaimera.ownership import controller_owner
from kaimera.reconciler import ReconcileResult, Reconciler
from kaimera.types import Request

logger = logging.getLogger(__name__)

DEFAULT_RESYNC_S = 300
DEFAULT_BACKOFF_BASE_S = 1.0
DEFAULT_BACKOFF_MAX_S = 300.0


class WorkQueue:
    """
    FIFO of requests where each identity is queued at most once.

    A request that is currently being processed may be queued again; it is
    handed out only after done() is called for it, so the same identity is
    never processed twice at the same time. add_after() parks a request
    until its delay has passed.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: Deque[Request] = deque()
        self._queued: Set[Request] = set()
        self._processing: Set[Request] = set()
        self._dirty: Set[Request] = set()
        self._delayed: List[Tuple[float, int, Request]] = []
        self._waiting: Dict[Request, float] = {}
        self._seq = 0
        self._shutdown = False

    def add(self, request: Request) -> None:
        with self._cond:
            self._add_locked(request)

    def add_after(self, request: Request, delay: float) -> None:
        """Queue request once delay seconds have passed."""
        if delay <= 0:
            self.add(request)
            return
        with self._cond:
            if self._shutdown:
                return
            ready_at = time.monotonic() + delay
            # An earlier pending retry wins.
            current = self._waiting.get(request)
            if current is not None and current <= ready_at:
                return
            self._waiting[request] = ready_at
            self._seq += 1
            heapq.heappush(self._delayed, (ready_at, self._seq, request))
            self._cond.notify()

    def _add_locked(self, request: Request) -> None:
        if self._shutdown:
            return
        if request in self._processing:
            self._dirty.add(request)
            return
        if request in self._queued:
            return
        self._queued.add(request)
        self._queue.append(request)
        self._cond.notify()

    def _promote_ready_locked(self, now: float) -> Optional[float]:
        """Move due delayed requests to the queue; return when the next one is due."""
        while self._delayed:
            ready_at, _, request = self._delayed[0]
            if self._waiting.get(request) != ready_at:
                heapq.heappop(self._delayed)  # superseded by an earlier retry
                continue
            if ready_at > now:
                return ready_at
            heapq.heappop(self._delayed)
            del self._waiting[request]
            self._add_locked(request)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[Request]:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                now = time.monotonic()
                next_ready = self._promote_ready_locked(now)
                if self._queue:
                    request = self._queue.popleft()
                    self._queued.discard(request)
                    self._processing.add(request)
                    return request
                if self._shutdown:
                    return None
                if deadline is not None and now >= deadline:
                    return None

                wait_for = None if deadline is None else deadline - now
                if next_ready is not None:
                    until_ready = next_ready - now
                    wait_for = until_ready if wait_for is None else min(wait_for, until_ready)
                self._cond.wait(wait_for)

    def done(self, request: Request) -> None:
        with self._cond:
            self._processing.discard(request)
            if request in self._dirty:
                self._dirty.discard(request)
                self._add_locked(request)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._delayed.clear()
            self._waiting.clear()
            self._cond.notify_all()

    def delayed(self) -> int:
        """Number of requests waiting for their retry delay."""
        with self._cond:
            return len(self._waiting)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


def retry_delay(failures: int, base: float = DEFAULT_BACKOFF_BASE_S, cap: float = DEFAULT_BACKOFF_MAX_S) -> float:
    """Exponential delay before retry number `failures` (1-based), capped at cap."""
    if failures <= 0:
        return 0.0
    return min(base * (2 ** (failures - 1)), cap)



def _request_for_model_deployment(obj: Any) -> Optional[Request]:
    if not isinstance(obj, dict):
        return None
    meta = obj.get("metadata") or {}
    if not meta.get("name") or not meta.get("namespace"):
        return None
    return Request(namespace=meta["namespace"], name=meta["name"])


def _request_for_owned(obj: Any) -> Optional[Request]:
    ref = controller_owner(obj, kind=types.KIND)
    if ref is None or not ref.api_version.startswith(f"{types.GROUP}/"):
        return None
    return Request(namespace=obj.metadata.namespace, name=ref.name)


class Controller:
    """
    Dispatches ModelDeployment identities to a Reconciler.

    Uses:
    - Watch API on ModelDeployments (custom objects)
    - Watch API on Deployments and Services, mapped to their controlling ModelDeployment
    - a single worker thread, so reconciles never overlap
    - per-identity exponential backoff for failed reconciles
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        reconciler: Reconciler,
        namespace: Optional[str] = None,
        resync_seconds: int = DEFAULT_RESYNC_S,
        backoff_base_s: float = DEFAULT_BACKOFF_BASE_S,
        backoff_max_s: float = DEFAULT_BACKOFF_MAX_S,
    ) -> None:
        """
        Initialize the controller.

        Args:
            control_plane: API access used for the watches
            reconciler: Reconciler invoked for every dispatched identity
            namespace: Namespace to watch (None watches all namespaces)
            resync_seconds: Watch timeout; every restart re-delivers all objects
            backoff_base_s: Delay before the first retry of a failed reconcile
            backoff_max_s: Upper bound on the retry delay
        """
        self.control_plane = control_plane
        self.reconciler = reconciler
        self.namespace = namespace
        self.resync_seconds = max(1, int(resync_seconds))
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s

        self.queue = WorkQueue()
        self._running = False
        self._threads: List[threading.Thread] = []
        self._watches: List[watch.Watch] = []
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._results: Dict[Request, ReconcileResult] = {}
        self._failures: Dict[Request, int] = {}

        scope = namespace or "all namespaces"
        logger.info(f"Controller initialized for {scope}")

    def start(self) -> None:
        """Start the watch threads and the worker."""
        if self._running:
            logger.warning("Controller already running")
            return

        self._running = True
        self._stop_event.clear()

        self._spawn("watch-modeldeployments", self._watch_loop, self._list_model_deployments, _request_for_model_deployment)
        self._spawn("watch-deployments", self._watch_loop, self._list_deployments, _request_for_owned)
        self._spawn("watch-services", self._watch_loop, self._list_services, _request_for_owned)
        self._spawn("reconcile-worker", self._worker_loop)

        logger.info("Controller started")

    def stop(self) -> None:
        """Stop watching and cancel the in-flight reconcile."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        self.queue.shutdown()
        for w in list(self._watches):
            w.stop()

        for thread in self._threads:
            thread.join(timeout=5.0)

        self._threads.clear()
        self._watches.clear()
        logger.info("Controller stopped")

    def is_running(self) -> bool:
        return self._running

    def enqueue(self, request: Request) -> None:
        self.queue.add(request)

    def results(self) -> Dict[Request, ReconcileResult]:
        with self._lock:
            return dict(self._results)

    def process_next(self, timeout: Optional[float] = None) -> Optional[ReconcileResult]:
        """Reconcile the next queued identity, if any arrives within timeout."""
        request = self.queue.get(timeout=timeout)
        if request is None:
            return None
        try:
            result = self.reconciler.reconcile(request, cancel=self._stop_event)
        finally:
            self.queue.done(request)

        with self._lock:
            self._results[request] = result
            if result.requeue:
                failures = self._failures.get(request, 0) + 1
                self._failures[request] = failures
            else:
                failures = 0
                self._failures.pop(request, None)

        if failures:
            delay = retry_delay(failures, self.backoff_base_s, self.backoff_max_s)
            logger.warning(f"Reconcile of {request} failed (attempt {failures}), retrying in {delay:.1f}s: {result.error}")
            self.queue.add_after(request, delay)
        return result

    def failure_count(self, request: Request) -> int:
        """Consecutive failed reconciles of request since its last success."""
        with self._lock:
            return self._failures.get(request, 0)

    def _spawn(self, name: str, target: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.process_next(timeout=1.0)
            except Exception as e:
                logger.error(f"Error in reconcile worker: {e}")

    # watch.Watch reads the list method's docstring to pick the event object
    # type, so these return the bound API method plus its arguments.

    def _list_model_deployments(self) -> Tuple[Callable[..., Any], Dict[str, Any]]:
        custom = self.control_plane.custom
        kwargs: Dict[str, Any] = {"group": types.GROUP, "version": types.VERSION, "plural": types.PLURAL}
        if self.namespace:
            return custom.list_namespaced_custom_object, dict(kwargs, namespace=self.namespace)
        return custom.list_cluster_custom_object, kwargs

    def _list_deployments(self) -> Tuple[Callable[..., Any], Dict[str, Any]]:
        apps = self.control_plane.apps
        if self.namespace:
            return apps.list_namespaced_deployment, {"namespace": self.namespace}
        return apps.list_deployment_for_all_namespaces, {}

    def _list_services(self) -> Tuple[Callable[..., Any], Dict[str, Any]]:
        core = self.control_plane.core
        if self.namespace:
            return core.list_namespaced_service, {"namespace": self.namespace}
        return core.list_service_for_all_namespaces, {}

    def _watch_loop(
        self,
        list_func: Callable[[], Tuple[Callable[..., Any], Dict[str, Any]]],
        to_request: Callable[[Any], Optional[Request]],
    ) -> None:
        """Stream events for one kind until stopped, restarting after every timeout."""
        w = watch.Watch()
        self._watches.append(w)
        list_call, list_kwargs = list_func()

        while not self._stop_event.is_set():
            try:
                for event in w.stream(list_call, timeout_seconds=self.resync_seconds, **list_kwargs):
                    if self._stop_event.is_set():
                        break
                    if event.get("type") == "ERROR":
                        logger.warning(f"Watch returned an error event: {event.get('raw_object')}")
                        break
                    request = to_request(event["object"])
                    if request is not None:
                        self.enqueue(request)
            except Exception as e:
                logger.error(f"Error watching: {e}")
                self._stop_event.wait(5)  # Wait before restarting the watch
