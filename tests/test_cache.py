import threading

import pytest

from platsched.telemetry.cache import (
    AutoUpdatingCache,
    ConcurrentCache,
    MetricNotFoundError,
    MetricsClient,
    PolicyNotFoundError,
)


def node_metric_info(names, numbers):
    return {
        name: {"value": number, "window": 1.0, "timestamp": 100.000000001}
        for name, number in zip(names, numbers)
    }


class DictClient(MetricsClient):
    def __init__(self, data, called=None):
        self.data = data
        self.calls = []
        self.called = called

    def get_node_metric(self, name):
        self.calls.append(name)
        if self.called is not None:
            self.called.set()
        try:
            return self.data[name]
        except KeyError:
            raise MetricNotFoundError(name) from None


MOCK_POLICY = {"metadata": {"name": "mock-policy", "namespace": "default"}}
MOCK_POLICY_2 = {"metadata": {"name": "not-mock-policy", "namespace": "default"}}


@pytest.fixture
def mock_cache():
    cache = AutoUpdatingCache()
    cache.write_metric("dummyMetric1", node_metric_info(["node A", "node B"], [50, 30]))
    cache.write_metric("dummyMetric2", node_metric_info(["node 1", "node2"], [100, 200]))
    cache.write_metric("dummyMetric3", node_metric_info(["node Z", "node Y"], [8, 40000000]))
    return cache


# ConcurrentCache


def test_concurrent_cache_add_and_read():
    cache = ConcurrentCache()
    cache.add("k", 5)
    assert cache.read("k") == 5


def test_concurrent_cache_read_missing_is_none():
    assert ConcurrentCache().read("missing") is None


def test_concurrent_cache_none_keeps_existing_value():
    cache = ConcurrentCache()
    cache.add("k", "value")
    cache.add("k", None)
    assert cache.read("k") == "value"


def test_concurrent_cache_delete():
    cache = ConcurrentCache({"k": 1})
    cache.delete("k")
    cache.delete("absent")
    assert cache.read("k") is None


def test_concurrent_cache_initial_data():
    cache = ConcurrentCache({"a": 1, "b": 2})
    assert (cache.read("a"), cache.read("b")) == (1, 2)


# periodic update


def test_update_changes_metric_value():
    data = {"dummyMetric1": node_metric_info(["node A", "node B"], [50, 30])}
    client = DictClient(data)
    cache = AutoUpdatingCache()
    cache.write_metric("dummyMetric1", None)
    cache.write_metric("", None)
    cache.update_all_metrics(client)
    at_start = cache.read_metric("dummyMetric1")
    data["dummyMetric1"] = node_metric_info(["node A", "node B"], [500, 300])
    cache.update_all_metrics(client)
    at_end = cache.read_metric("dummyMetric1")
    assert at_start["node A"]["value"] == 50
    assert at_end["node A"]["value"] == 500


def test_update_drops_empty_metric_name():
    client = DictClient({})
    cache = AutoUpdatingCache()
    cache.write_metric("", None)
    cache.write_metric("dummyMetric1", None)
    cache.update_all_metrics(client)
    cache.update_all_metrics(client)
    assert client.calls == ["dummyMetric1", "dummyMetric1"]


def test_update_non_existing_metric_stays_missing():
    client = DictClient({"dummyMetric1": node_metric_info(["node A"], [1])})
    cache = AutoUpdatingCache()
    cache.write_metric("missing metric", None)
    cache.update_all_metrics(client)
    with pytest.raises(MetricNotFoundError):
        cache.read_metric("missing metric")


def test_periodic_update_runs_until_stopped():
    called = threading.Event()
    client = DictClient({"m": node_metric_info(["node A"], [7])}, called)
    cache = AutoUpdatingCache()
    cache.write_metric("m", None)
    stop = threading.Event()
    worker = threading.Thread(target=cache.periodic_update, args=(0.01, client, stop))
    worker.start()
    assert called.wait(5)
    stop.set()
    worker.join(5)
    assert not worker.is_alive()
    assert cache.read_metric("m")["node A"]["value"] == 7


# read metric


def test_read_existing_metric(mock_cache):
    assert mock_cache.read_metric("dummyMetric1") == node_metric_info(
        ["node A", "node B"], [50, 30]
    )


def test_read_non_existing_metric(mock_cache):
    with pytest.raises(MetricNotFoundError, match="no metric non-existing metric found"):
        mock_cache.read_metric("non-existing metric")


# policies


def test_read_existing_policy(mock_cache):
    mock_cache.write_policy("default", "mock-policy", MOCK_POLICY)
    assert mock_cache.read_policy("default", "mock-policy") == MOCK_POLICY


def test_read_non_existing_policy(mock_cache):
    mock_cache.write_policy("default", "mock-policy", MOCK_POLICY)
    with pytest.raises(PolicyNotFoundError):
        mock_cache.read_policy("default", "not-mock-policy")


def test_delete_existing_policy(mock_cache):
    mock_cache.write_policy("default", "mock-policy", MOCK_POLICY)
    mock_cache.delete_policy("default", "mock-policy")
    with pytest.raises(PolicyNotFoundError):
        mock_cache.read_policy("default", "mock-policy")


def test_delete_non_existing_policy_keeps_others(mock_cache):
    mock_cache.write_policy("default", "mock-policy", MOCK_POLICY)
    mock_cache.delete_policy("default", "not-mock-policy")
    assert mock_cache.read_policy("default", "mock-policy") == MOCK_POLICY


# write metric


@pytest.mark.parametrize(
    "written, queried",
    [("memoryFREE", "memory_free"), ("memoryFREE", "1"), ("memory_free", "memory_free")],
)
def test_write_metric_without_data_is_not_readable(written, queried):
    cache = AutoUpdatingCache()
    cache.write_metric(written, None)
    with pytest.raises(MetricNotFoundError):
        cache.read_metric(queried)


def test_write_empty_data_keeps_existing(mock_cache):
    mock_cache.write_metric("dummyMetric1", None)
    mock_cache.write_metric("dummyMetric1", {})
    assert mock_cache.read_metric("dummyMetric1")["node B"]["value"] == 30


# delete metric


def test_delete_metric_with_single_user_removes_it():
    client = DictClient({"m": node_metric_info(["node A"], [1])})
    cache = AutoUpdatingCache()
    cache.write_metric("m", None)
    cache.update_all_metrics(client)
    cache.delete_metric("m")
    with pytest.raises(MetricNotFoundError):
        cache.read_metric("m")


def test_delete_metric_with_two_users_keeps_it_once():
    client = DictClient({"m": node_metric_info(["node A"], [1])})
    cache = AutoUpdatingCache()
    cache.write_metric("m", None)
    cache.write_metric("m", None)
    cache.update_all_metrics(client)
    cache.delete_metric("m")
    assert cache.read_metric("m")["node A"]["value"] == 1
    cache.delete_metric("m")
    with pytest.raises(MetricNotFoundError):
        cache.read_metric("m")


def test_delete_unregistered_metric_keeps_data(mock_cache):
    mock_cache.delete_metric("dummymetric1")
    mock_cache.delete_metric("top speed")
    mock_cache.delete_metric("dummyMetric1")
    assert mock_cache.read_metric("dummyMetric1")["node A"]["value"] == 50