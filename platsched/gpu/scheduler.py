"""GPU aware scheduler extender: picks GPU cards for pods on candidate nodes."""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from http import HTTPStatus
from typing import Any

from platsched.extender.server import Response, Scheduler
from platsched.extender.types import Args, BindingArgs, BindingResult, FilterResult
from platsched.gpu.node_cache import (
    ADD,
    CARD_ANNOTATION_NAME,
    REMOVE,
    TS_ANNOTATION_NAME,
    BadArgsError,
    Cache,
    NodeResources,
)
from platsched.gpu.resource_map import INT64_MAX, ResourceError, ResourceMap
from platsched.gpu.utils import RESOURCE_PREFIX, container_requests, parse_quantity
from platsched.kube import ConflictError, KubeError

log = logging.getLogger(__name__)

UPDATE_ERROR_STR = "please apply your changes to the latest version"
UPDATE_RETRY_COUNT = 5
GPU_LIST_LABEL = "gpu.intel.com/cards"
GPU_PLUGIN_RESOURCE = "gpu.intel.com/i915"
NO_NODES_ERROR = (
    "No nodes to compare. "
    "This should not happen, perhaps the extender is misconfigured with NodeCacheCapable == false."
)
FAILED_NODE_REASON = "Not enough GPU-resources for deployment"


class WontFitError(Exception):
    """The pod does not fit the GPUs of the node."""


_SCHEDULING_ERRORS = (KubeError, ResourceError, BadArgsError, WontFitError, LookupError, ValueError)


def get_plugin_resource(resources: dict[str, int]) -> int:
    """Return the amount of the resource registered by the GPU plugin, or 0."""
    return next(
        (value for name, value in resources.items() if name.startswith(GPU_PLUGIN_RESOURCE)), 0
    )


def get_node_gpu_list(node: dict[str, Any] | None) -> list[str] | None:
    """Return the GPU card names listed in the node's label, or None."""
    labels = ((node or {}).get("metadata") or {}).get("labels")
    if node is None or labels is None:
        log.error("No labels in node")
        return None
    cards = labels.get(GPU_LIST_LABEL)
    if cards is None:
        log.error("gpulist label not found from node")
        return None
    return cards.split(".")


def get_node_gpu_resource_capacity(node: dict[str, Any]) -> ResourceMap:
    """Return the node's allocatable GPU resources."""
    allocatable = (node.get("status") or {}).get("allocatable") or {}
    return ResourceMap(
        {
            name: parse_quantity(quantity)
            for name, quantity in allocatable.items()
            if name.startswith(RESOURCE_PREFIX)
        }
    )


def get_per_gpu_resource_capacity(node: dict[str, Any], gpu_count: int) -> ResourceMap:
    """Return the capacity of a single GPU, assuming all GPUs of the node are alike."""
    if gpu_count == 0:
        return ResourceMap()
    per_gpu = get_node_gpu_resource_capacity(node).copy()
    per_gpu.divide(gpu_count)
    return per_gpu


def _num_i915(container_request: dict[str, int]) -> int:
    value = container_request.get(GPU_PLUGIN_RESOURCE, 0)
    return value if value > 0 else 0


def _per_gpu_resource_request(container_request: ResourceMap) -> tuple[ResourceMap, int]:
    per_gpu = container_request.copy()
    num_i915 = _num_i915(container_request)
    if num_i915 > 1:
        per_gpu.divide(num_i915)
    return per_gpu, num_i915


def check_resource_capacity(
    needed: dict[str, int], capacity: dict[str, int], used: dict[str, int]
) -> bool:
    """Tell whether the needed resources fit into capacity next to what is used."""
    for name, need in needed.items():
        if need < 0:
            log.error("negative resource request")
            return False
        available = capacity.get(name)
        if available is None or available <= 0:
            log.debug(" no capacity available for %s", name)
            return False
        in_use = used.get(name, 0)
        if in_use < 0:
            log.error("negative amount of resources in use")
            return False
        log.debug(" resource %s capacity:%d used:%d need:%d", name, available, in_use, need)
        if in_use + need > INT64_MAX:
            log.error("resource request overflow error")
            return False
        if available < in_use + need:
            log.debug(" not enough resources")
            return False
    log.debug(" there is enough resources")
    return True


def _add_annotations(ts: str, annotation: str, pod: dict[str, Any]) -> None:
    metadata = pod.setdefault("metadata", {})
    annotations = metadata.get("annotations")
    if annotations is None:
        annotations = metadata["annotations"] = {}
    annotations[TS_ANNOTATION_NAME] = ts
    annotations[CARD_ANNOTATION_NAME] = annotation


def _json_response(result: Any, failed: bool) -> Response:
    status = HTTPStatus.NOT_FOUND if failed else HTTPStatus.OK
    return Response(status, json.dumps(result.to_json()).encode("utf-8") + b"\n")


class GASExtender(Scheduler):
    """Filters nodes by free GPU resources and binds pods to chosen cards."""

    def __init__(self, client: Any, cache: Any = None) -> None:
        self.client = client
        self.cache = cache if cache is not None else Cache(client)
        self._lock = threading.Lock()

    def read_node_resources(self, node_name: str) -> NodeResources:
        """Return a copy of the node's per-card resource usage."""
        resources = self.cache.get_node_resource_status(node_name)
        if resources is None:
            raise LookupError(f"resources of node {node_name} not found")
        return resources

    def _cards_for_container(
        self,
        container_request: ResourceMap,
        per_gpu_capacity: ResourceMap,
        node_name: str,
        pod_name: str,
        used: NodeResources,
        gpus: set[str],
    ) -> list[str]:
        cards: list[str] = []
        if not container_request:
            return cards
        per_gpu_request, num_i915 = _per_gpu_resource_request(container_request)
        for _ in range(num_i915):
            fitted = False
            for gpu_name in sorted(used):
                log.debug("Checking gpu %s", gpu_name)
                if gpu_name not in gpus:
                    log.warning("node %s gpu %s has vanished", node_name, gpu_name)
                    continue
                if check_resource_capacity(per_gpu_request, per_gpu_capacity, used[gpu_name]):
                    try:
                        used[gpu_name].add_rm(per_gpu_request)
                    except ResourceError:
                        pass
                    else:
                        fitted = True
                        cards.append(gpu_name)
                    break
            if not fitted:
                log.debug("pod %s will not fit node %s", pod_name, node_name)
                raise WontFitError(f"pod {pod_name} will not fit node {node_name}")
        return cards

    def run_scheduling_logic(self, pod: dict[str, Any], node_name: str) -> str:
        """Choose cards for every container of the pod on the node.

        Returns the card annotation; node resource usage is not changed.
        """
        pod_name = (pod.get("metadata") or {}).get("name") or ""
        try:
            node = self.cache.fetch_node(node_name)
        except _SCHEDULING_ERRORS:
            log.warning("Node %s couldn't be read or node vanished", node_name)
            raise
        gpus = get_node_gpu_list(node)
        log.debug("Node gpu list: %s", gpus)
        if not gpus:
            log.warning("Node %s GPUs have vanished", node_name)
            raise WontFitError(f"node {node_name} has no GPUs")
        per_gpu_capacity = get_per_gpu_resource_capacity(node, len(gpus))
        used = self.read_node_resources(node_name)
        for gpu in gpus:
            used.setdefault(gpu, ResourceMap())
        gpu_set = set(gpus)

        requests = container_requests(pod)
        container_cards = []
        for number, request in enumerate(requests, start=1):
            try:
                cards = self._cards_for_container(
                    request, per_gpu_capacity, node_name, pod_name, used, gpu_set
                )
            except WontFitError:
                log.error("container %d out of %d did not fit", number, len(requests))
                raise
            container_cards.append(",".join(cards))
        return "|".join(container_cards)

    def annotate_pod_bind(self, annotation: str, pod: dict[str, Any]) -> None:
        """Write the card annotation into the pod, retrying on stale updates."""
        pod_copy = copy.deepcopy(pod)
        ts = str(time.time_ns())
        _add_annotations(ts, annotation, pod_copy)
        error: Exception | None = None
        for _ in range(UPDATE_RETRY_COUNT):
            try:
                self.client.update_pod(pod_copy)
            except KubeError as exc:
                error = exc
                if not (isinstance(exc, ConflictError) or UPDATE_ERROR_STR in str(exc)):
                    break
                metadata = pod_copy.get("metadata") or {}
                try:
                    pod_copy = self.client.get_pod(
                        metadata.get("namespace") or "", metadata.get("name") or ""
                    )
                except KubeError:
                    log.error("pod refresh failed")
                    break
                _add_annotations(ts, annotation, pod_copy)
                log.error("pod update failed, retrying with refreshed pod")
                continue
            error = None
            break
        if error is not None:
            log.error("Failed to annotate POD with container cards: %s", error)
            raise error
        log.info(
            "Annotated pod %s with annotation %s",
            (pod.get("metadata") or {}).get("name"),
            annotation,
        )

    def filter_nodes(self, args: Args) -> FilterResult:
        """Split the candidate nodes into those the pod fits and those it does not."""
        if not args.node_names:
            log.error(NO_NODES_ERROR)
            return FilterResult(error=NO_NODES_ERROR)
        node_names: list[str] = []
        failed: dict[str, str] = {}
        with self._lock:
            for node_name in args.node_names:
                try:
                    self.run_scheduling_logic(args.pod, node_name)
                except _SCHEDULING_ERRORS:
                    failed[node_name] = FAILED_NODE_REASON
                else:
                    node_names.append(node_name)
        return FilterResult(node_names=node_names, failed_nodes=failed, error="")

    def bind_node(self, args: BindingArgs) -> BindingResult:
        """Account the pod's GPUs, annotate the pod and bind it to the node."""
        try:
            pod = self.cache.fetch_pod(args.pod_namespace, args.pod_name)
        except _SCHEDULING_ERRORS as exc:
            log.warning("Pod %s couldn't be read or pod vanished", args.pod_name)
            return BindingResult(error=str(exc))

        with self._lock:
            adjusted = False
            annotation = ""
            try:
                annotation = self.run_scheduling_logic(pod, args.node)
                log.info(
                    "bind %s:%s to node %s annotation %s",
                    args.pod_namespace,
                    args.pod_name,
                    args.node,
                    annotation,
                )
                self.cache.adjust_pod_resources(pod, ADD, annotation, args.node)
                adjusted = True
                self.annotate_pod_bind(annotation, pod)
                self.client.bind_pod(args.pod_namespace, args.pod_name, args.pod_uid, args.node)
            except _SCHEDULING_ERRORS as exc:
                log.error("binding failed: %s", exc)
                if adjusted:
                    try:
                        self.cache.adjust_pod_resources(pod, REMOVE, annotation, args.node)
                    except _SCHEDULING_ERRORS as restore_exc:
                        log.error("restoring resources failed: %s", restore_exc)
                return BindingResult(error=str(exc) or type(exc).__name__)
        return BindingResult()

    def filter(self, body: bytes) -> Response:
        """Answer a filter request from the scheduler."""
        log.debug("filter request received")
        try:
            args = Args.from_json(body)
        except ValueError as exc:
            log.error("cannot decode request %s", exc)
            return Response(HTTPStatus.NOT_FOUND)
        result = self.filter_nodes(args)
        if result.error:
            log.error("filtering failed")
        return _json_response(result, bool(result.error))

    def prioritize(self, body: bytes) -> Response:
        """Prioritizing is not offered; always answers not found."""
        return Response(HTTPStatus.NOT_FOUND)

    def bind(self, body: bytes) -> Response:
        """Answer a bind request from the scheduler."""
        log.debug("bind request received")
        try:
            args = BindingArgs.from_json(body)
        except ValueError as exc:
            log.error("cannot decode request %s", exc)
            return Response(HTTPStatus.NOT_FOUND)
        result = self.bind_node(args)
        if result.error:
            log.error("bind failed")
        return _json_response(result, bool(result.error))