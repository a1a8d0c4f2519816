"""Cache of GPU resource usage per node and card, fed by pod events."""

from __future__ import annotations

import copy
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from platsched.gpu.resource_map import ResourceError, ResourceMap
from platsched.gpu.utils import container_requests, has_gpu_resources, is_completed_pod

log = logging.getLogger(__name__)

TS_ANNOTATION_NAME = "gas-ts"
CARD_ANNOTATION_NAME = "gas-container-cards"
WORKER_WAIT = 0.1
INFORMER_INTERVAL = 30.0

ADD = True
REMOVE = False

NodeResources = dict[str, ResourceMap]


class Action(IntEnum):
    """What happened to a pod."""

    UPDATED = 0
    ADDED = 1
    DELETED = 2
    COMPLETED = 3


@dataclass
class WorkItem:
    """A pod event waiting to be applied to the cache."""

    name: str = ""
    namespace: str = ""
    annotation: str = ""
    action: int = Action.UPDATED
    pod: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeletedFinalStateUnknown:
    """A deleted object whose final state was not observed."""

    key: str
    obj: Any


class UnknownActionError(Exception):
    """A work item carries an action the cache does not know."""


class BadArgsError(ValueError):
    """Container requests and card annotation do not line up, or no node is given."""


def _metadata(pod: dict[str, Any]) -> dict[str, Any]:
    return pod.get("metadata") or {}


def _node_name(pod: dict[str, Any]) -> str:
    return (pod.get("spec") or {}).get("nodeName") or ""


def _annotation(pod: dict[str, Any]) -> str | None:
    return (_metadata(pod).get("annotations") or {}).get(CARD_ANNOTATION_NAME)


def get_key(pod: dict[str, Any]) -> str:
    """Return the cache key of a pod: namespace and name joined by '&'."""
    metadata = _metadata(pod)
    return f"{metadata.get('namespace') or ''}&{metadata.get('name') or ''}"


def _cards_per_container(annotation: str) -> list[str]:
    return annotation.split("|")


class Cache:
    """Tracks which GPU resources annotated pods use on each card of each node.

    Pod events are queued and applied by a worker thread started with
    :meth:`start`; :meth:`work` applies a single queued event.
    """

    def __init__(self, client: Any) -> None:
        if client is None:
            log.error("Can't create cache with nil clientset")
            raise ValueError("cannot create a cache without a client")
        self.client = client
        self._lock = threading.RLock()
        self._annotated: dict[str, str] = {}
        self._node_statuses: dict[str, NodeResources] = {}
        self._queue: deque[WorkItem] = deque()
        self._queue_cond = threading.Condition()
        self._shutting_down = False
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._known_pods: dict[str, dict[str, Any]] = {}

    @property
    def annotated_pods(self) -> dict[str, str]:
        """A copy of the pod keys with their card annotations."""
        with self._lock:
            return dict(self._annotated)

    # event handlers

    def filter(self, obj: Any) -> bool:
        """Tell whether an event object is a pod requesting GPU resources."""
        if isinstance(obj, DeletedFinalStateUnknown):
            obj = obj.obj
        if not isinstance(obj, dict):
            return False
        return has_gpu_resources(obj)

    def add_pod(self, pod: Any) -> None:
        """Queue an added pod, if it already carries a card annotation."""
        if not isinstance(pod, dict):
            log.warning("cannot convert to pod: %r", pod)
            return
        annotation = _annotation(pod)
        if annotation is None:
            return
        metadata = _metadata(pod)
        self._enqueue(
            WorkItem(
                name=metadata.get("name") or "",
                namespace=metadata.get("namespace") or "",
                annotation=annotation,
                action=Action.ADDED,
                pod=pod,
            )
        )

    def update_pod(self, old_pod: Any, new_pod: Any) -> None:
        """Queue an updated pod, as completed if it has finished."""
        if not isinstance(new_pod, dict):
            log.warning("conversion of new object to pod failed: %r", new_pod)
            return
        annotation = _annotation(new_pod)
        if annotation is None:
            return
        metadata = _metadata(new_pod)
        action = Action.COMPLETED if is_completed_pod(new_pod) else Action.UPDATED
        self._enqueue(
            WorkItem(
                name=metadata.get("name") or "",
                namespace=metadata.get("namespace") or "",
                annotation=annotation,
                action=action,
                pod=new_pod,
            )
        )

    def delete_pod(self, obj: Any) -> None:
        """Queue a deleted pod, if the cache accounted for it."""
        if isinstance(obj, DeletedFinalStateUnknown):
            obj = obj.obj
        if not isinstance(obj, dict):
            log.warning("cannot convert to pod: %r", obj)
            return
        key = get_key(obj)
        with self._lock:
            annotated = key in self._annotated
        metadata = _metadata(obj)
        log.debug(
            "delete pod %s in ns %s annotated:%s",
            metadata.get("name"),
            metadata.get("namespace"),
            annotated,
        )
        if not annotated:
            return
        self._enqueue(
            WorkItem(
                name=metadata.get("name") or "",
                namespace=metadata.get("namespace") or "",
                action=Action.DELETED,
                pod=obj,
            )
        )

    # resource accounting

    def _copy_node_status(self, node_name: str) -> NodeResources:
        return {card: rm.copy() for card, rm in self._node_statuses.get(node_name, {}).items()}

    def _apply(
        self,
        node_res: NodeResources,
        requests: list[ResourceMap],
        cards: list[str],
        adj: bool,
    ) -> None:
        for request, card_list in zip(requests, cards):
            if not card_list:
                continue
            card_names = card_list.split(",")
            request.divide(len(card_names))
            for card_name in card_names:
                card_res = node_res.setdefault(card_name, ResourceMap())
                if adj:
                    card_res.add_rm(request)
                else:
                    card_res.subtract_rm(request)

    def adjust_pod_resources(
        self, pod: dict[str, Any], adj: bool, annotation: str, node_name: str
    ) -> None:
        """Add (``adj`` true) or remove the pod's resources on the annotated cards.

        Either every container is accounted for or nothing changes.
        """
        with self._lock:
            requests = container_requests(pod)
            cards = _cards_per_container(annotation)
            if len(requests) != len(cards) or not node_name:
                log.error(
                    "bad args, node %s pod creqs %s ccards %s", node_name, requests, cards
                )
                raise BadArgsError("container requests and cards do not match")

            trial = self._copy_node_status(node_name)
            self._apply(trial, [rm.copy() for rm in requests], cards, adj)
            self._node_statuses[node_name] = trial

            if adj:
                self._annotated[get_key(pod)] = annotation
            else:
                self._annotated.pop(get_key(pod), None)
            self._log_node_status(node_name)

    def handle_pod(self, item: WorkItem) -> None:
        """Apply one queued pod event to the resource accounting."""
        with self._lock:
            pod = item.pod
            key = get_key(pod)
            node_name = _node_name(pod)
            action = item.action
            if action in (Action.COMPLETED, Action.DELETED):
                prefix = "podCompleted -> " if action == Action.COMPLETED else ""
                if key in self._annotated:
                    log.debug(
                        "%spodDeleted, key:%s annotation:%s", prefix, key, self._annotated[key]
                    )
                    self.adjust_pod_resources(pod, REMOVE, item.annotation, node_name)
                else:
                    log.debug("%spodDeleted, key:%s annotation already gone", prefix, key)
            elif action in (Action.ADDED, Action.UPDATED):
                prefix = "podAdded -> " if action == Action.ADDED else ""
                if key in self._annotated:
                    log.debug("%spodUpdated, key:%s annotation already present", prefix, key)
                else:
                    log.debug("%spodUpdated, key:%s annotation:%s", prefix, key, item.annotation)
                    self.adjust_pod_resources(pod, ADD, item.annotation, node_name)
            else:
                log.debug("unknown action")
                raise UnknownActionError(f"unknown action {action!r}")
            self._log_node_status(node_name)

    def _log_node_status(self, node_name: str) -> None:
        if not log.isEnabledFor(logging.DEBUG):
            return
        log.debug("%s:", node_name)
        for card, resources in self._node_statuses.get(node_name, {}).items():
            log.debug("    %s:%s", card, dict(resources))

    # work queue

    def _enqueue(self, item: WorkItem) -> None:
        with self._queue_cond:
            if self._shutting_down:
                return
            self._queue.append(item)
            self._queue_cond.notify()

    def queue_length(self) -> int:
        """Number of pod events waiting to be handled."""
        with self._queue_cond:
            return len(self._queue)

    def work(self, timeout: float | None = None) -> bool:
        """Handle one queued event.

        Returns False once the queue is shut down and empty, True otherwise,
        including when ``timeout`` expires with nothing to do.
        """
        with self._queue_cond:
            self._queue_cond.wait_for(
                lambda: bool(self._queue) or self._shutting_down, timeout
            )
            if self._queue:
                item = self._queue.popleft()
            elif self._shutting_down:
                log.debug("worker quitting")
                return False
            else:
                return True
        try:
            self.handle_pod(item)
        except (UnknownActionError, BadArgsError, ResourceError) as exc:
            log.error("error handling pod %s ns %s: %s", item.name, item.namespace, exc)
        return True

    def shutdown(self) -> None:
        """Stop the background threads and the work queue."""
        self._stop.set()
        with self._queue_cond:
            self._shutting_down = True
            self._queue_cond.notify_all()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=5)
        self._threads.clear()

    # background operation

    def _resync(self) -> None:
        pods = self.client.list_pods()
        current = {get_key(pod): pod for pod in pods if self.filter(pod)}
        for key, pod in current.items():
            old = self._known_pods.get(key)
            if old is None:
                self.add_pod(pod)
            else:
                self.update_pod(old, pod)
        for key, old in self._known_pods.items():
            if key not in current:
                self.delete_pod(old)
        self._known_pods = current

    def _worker_loop(self) -> None:
        log.info("Starting worker")
        while not self._stop.is_set() and self.work(WORKER_WAIT):
            pass
        log.info("Worker shutting down")

    def _resync_loop(self) -> None:
        while not self._stop.wait(INFORMER_INTERVAL):
            try:
                self._resync()
            except Exception as exc:  # keep watching after transient API failures
                log.error("pod resync failed: %s", exc)

    def start(self) -> None:
        """Load the current pods, then keep the cache updated in background threads.

        Errors of the initial pod listing are raised.
        """
        if self._threads:
            return
        self._resync()
        log.info("pod cache created and synced successfully")
        for target, name in ((self._worker_loop, "gas-worker"), (self._resync_loop, "gas-resync")):
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    # lookups

    def fetch_node(self, node_name: str) -> dict[str, Any]:
        """Fetch a node object by name."""
        return self.client.get_node(node_name)

    def fetch_pod(self, namespace: str, name: str) -> dict[str, Any]:
        """Fetch a private copy of a pod object."""
        return copy.deepcopy(self.client.get_pod(namespace, name))

    def get_node_resource_status(self, node_name: str) -> NodeResources:
        """Return a copy of the per-card resource usage of a node."""
        with self._lock:
            return self._copy_node_status(node_name)