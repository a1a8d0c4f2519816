"""Thread-safe cache of node metrics and telemetry policies."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

log = logging.getLogger(__name__)

POLICY_PATH = "policies/{}/{}"
METRIC_PATH = "metrics/{}"


class MetricNotFoundError(LookupError):
    """No data is cached for the requested metric."""


class PolicyNotFoundError(LookupError):
    """No policy is cached under the requested namespace and name."""


class MetricsClient(ABC):
    """Source of per-node metric values."""

    @abstractmethod
    def get_node_metric(self, name: str) -> Mapping[str, Any]:
        """Return the metric's values keyed by node name; raise if unavailable."""


class ConcurrentCache:
    """A key-value store that is safe to use from several threads.

    Writing ``None`` to a key that already holds a value keeps that value.
    """

    def __init__(self, initial_data: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial_data or {})
        self._data_lock = threading.Lock()

    def add(self, key: str, payload: Any) -> None:
        """Store ``payload`` under ``key``; ``None`` leaves an existing value alone."""
        with self._data_lock:
            if payload is None and key in self._data:
                payload = self._data[key]
            self._data[key] = payload

    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        with self._data_lock:
            self._data.pop(key, None)

    def read(self, key: str) -> Any:
        """Return the value under ``key``, or ``None``."""
        with self._data_lock:
            return self._data.get(key)


class AutoUpdatingCache(ConcurrentCache):
    """Caches metrics of interest and policies, refreshing the metrics periodically.

    Each metric carries a count of the strategies using it; it stays cached
    until the count drops to zero.
    """

    def __init__(self, initial_data: Mapping[str, Any] | None = None) -> None:
        super().__init__(initial_data)
        self._mtx = threading.RLock()
        self._metric_map: dict[str, int] = {}

    def periodic_update(
        self,
        period: float,
        client: MetricsClient,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Refresh all metrics every ``period`` seconds until ``stop_event`` is set."""
        stop = stop_event if stop_event is not None else threading.Event()
        while True:
            self.update_all_metrics(client)
            if stop.wait(period):
                return

    def update_all_metrics(self, client: MetricsClient) -> None:
        """Fetch fresh data for every registered metric; empty names are dropped."""
        with self._mtx:
            for name in list(self._metric_map):
                if not name:
                    del self._metric_map[name]
                    continue
                try:
                    self._update_metric(client, name)
                except Exception as exc:  # a failing metric must not stop the others
                    log.info("%s", exc)

    def _update_metric(self, client: MetricsClient, metric_name: str) -> None:
        metric_info = client.get_node_metric(metric_name)
        self.write_metric(metric_name, metric_info)

    def read_metric(self, metric_name: str) -> Any:
        """Return the cached node values of a metric."""
        value = self.read(METRIC_PATH.format(metric_name))
        if value is None:
            raise MetricNotFoundError(f"no metric {metric_name} found")
        return value

    def read_policy(self, namespace: str, policy_name: str) -> Any:
        """Return the policy cached under namespace and name."""
        value = self.read(POLICY_PATH.format(namespace, policy_name))
        if value is None:
            raise PolicyNotFoundError(f"no policy {policy_name} found")
        return value

    def write_policy(self, namespace: str, policy_name: str, policy: Any) -> None:
        """Cache a policy under namespace and name."""
        self.add(POLICY_PATH.format(namespace, policy_name), policy)

    def write_metric(self, metric_name: str, data: Mapping[str, Any] | None) -> None:
        """Cache metric data.

        Empty data never overwrites cached values; instead it registers one
        more user of the metric, protecting it from deletion.
        """
        payload = data if data else None
        self.add(METRIC_PATH.format(metric_name), payload)
        if payload is None:
            with self._mtx:
                self._metric_map[metric_name] = self._metric_map.get(metric_name, 0) + 1

    def delete_policy(self, namespace: str, policy_name: str) -> None:
        """Remove the policy cached under namespace and name."""
        key = POLICY_PATH.format(namespace, policy_name)
        log.info("deleting %s", key)
        self.delete(key)

    def delete_metric(self, metric_name: str) -> None:
        """Drop one user of the metric; the last user removes it from the cache."""
        with self._mtx:
            total = self._metric_map.get(metric_name, 0)
            if metric_name in self._metric_map and total == 1:
                del self._metric_map[metric_name]
                self.delete(METRIC_PATH.format(metric_name))
            else:
                self._metric_map[metric_name] = total - 1