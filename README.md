# platsched

A scheduler extender for Kubernetes that places pods onto GPU cards, plus a cache for node
metrics and telemetry policies.

The package contains:

- `platsched.extender.server`: `Server` is the extender's HTTP(S) front end. `Scheduler` is the
  abstract interface an extender implements (`filter`, `prioritize`, `bind`).
  `configure_tls_context` builds the server's TLS context.
- `platsched.extender.types`: the wire types of the extender protocol: `Args`, `FilterResult`,
  `BindingArgs`, `BindingResult` and `HostPriority`.
- `platsched.gpu`: GPU-aware scheduling.
  - `resource_map.ResourceMap` does resource arithmetic with 64-bit overflow checks.
  - `utils` reads a pod's `gpu.intel.com/*` requests and parses Kubernetes quantities.
  - `node_cache.Cache` records how much of each card on each node is in use, based on pods that
    carry the `gas-container-cards` annotation.
  - `scheduler.GASExtender` implements filtering and binding.
  - `cli` is the command-line entry point.
- `platsched.telemetry.cache`: `AutoUpdatingCache`, a thread-safe cache of metrics and policies.
  `MetricsClient` is the abstract source it refreshes metrics from.
- `platsched.kube`: `KubeClient`, a small JSON client for the Kubernetes API. It handles nodes,
  pods and bindings. `get_kube_client` tries the in-cluster service account first and falls back
  to a kubeconfig file.

## Installation

```
pip install .
```

## Running the GPU-aware extender

```
gas-scheduler-extender --kubeConfig /root/.kube/config --port 9001 \
    --cert /etc/kubernetes/pki/ca.crt --key /etc/kubernetes/pki/ca.key \
    --cacert /etc/kubernetes/pki/ca.crt
```

Options:

| Option | Default | Meaning |
| --- | --- | --- |
| `--kubeConfig` | `/root/.kube/config` | kubeconfig used when not running in a cluster |
| `--port` | `9001` | listening port |
| `--cert` | `/etc/kubernetes/pki/ca.crt` | server certificate |
| `--key` | `/etc/kubernetes/pki/ca.key` | server key |
| `--cacert` | `/etc/kubernetes/pki/ca.crt` | CA used to verify client certificates |
| `--unsafe` | off | serve plain HTTP instead of HTTPS |
| `--v` | `0` | log verbosity; 1–3 logs info, 4 and above logs debug |

Each option also works with a single dash, for example `-port 9001`.

Without `--unsafe`, the server uses TLS 1.2 or later and accepts only the
ECDHE-RSA/ECDSA-AES256-GCM-SHA384 cipher suites. Clients must present a certificate signed by
the CA given in `--cacert`.

On startup the extender lists all pods and records the ones that already carry a card
annotation. After that it re-lists pods every 30 seconds and feeds new, changed and vanished
pods to a background worker.

### Endpoints

Every request is checked in this order, and the first check that fails decides the response:

1. `Content-Type` must be `application/json`, otherwise 404.
2. The body must not exceed 1,000,000,000 bytes, otherwise 500.
3. The method must be `POST`, otherwise 405.

After those checks:

- `/scheduler/filter` takes `Args` with `NodeNames`. It returns a `FilterResult` that lists the
  nodes whose GPUs can hold every container's request. Failed nodes are listed with the reason
  "Not enough GPU-resources for deployment".
- `/scheduler/bind` takes `BindingArgs`. It chooses cards and records the resources in the
  cache. It then annotates the pod with `gas-container-cards` and `gas-ts`, retrying up to 5
  times on update conflicts, and binds the pod to the node. If any step after recording fails,
  the recorded resources are released again.
- `/scheduler/prioritize` always returns 404.
- Any other path returns 404.

A filter or bind result that carries an error is still returned as JSON, with status 404. If
the request body cannot be decoded, the response is 404 with no body.

## Using the library

```python
from platsched.gpu.resource_map import ResourceMap

used = ResourceMap({"gpu.intel.com/millicores": 200})
used.add_rm(ResourceMap({"gpu.intel.com/millicores": 300}))
used.divide(2)
```

`add_rm` and `subtract_rm` change the map only when every key succeeds. On failure they raise
`ResourceOverflowError` or `ResourceInputError` and leave the map as it was. `subtract` caps a
result at zero, and raises for a key that is not in the map.

```python
from platsched.telemetry.cache import AutoUpdatingCache

cache = AutoUpdatingCache()
cache.write_metric("memory_free", None)   # register one user of the metric
cache.update_all_metrics(client)          # client is a MetricsClient
info = cache.read_metric("memory_free")   # raises MetricNotFoundError if nothing is cached
cache.delete_metric("memory_free")        # the last user removes the metric
```

`periodic_update(period, client, stop_event)` calls `update_all_metrics` every `period`
seconds until `stop_event` is set. Policies are stored and read with `write_policy`,
`read_policy` and `delete_policy`. `read_policy` raises `PolicyNotFoundError` when no policy is
cached under the given namespace and name.

## What is not included

- There is no telemetry-aware scheduler extender and no command to run one. Nothing here
  watches telemetry policy objects in the API server or enforces their strategies.
- No `MetricsClient` that fetches real metrics is provided. You supply your own implementation.
- `KubeClient` reads tokens, token files, client certificates and CA data from a kubeconfig. It
  does not run exec or auth-provider plugins.
- The GPU extender polls the pod list instead of watching it, so it can notice changes up to
  30 seconds late.

## Tests

```
pip install .[test]
pytest
```