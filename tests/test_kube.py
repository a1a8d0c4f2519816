import base64
import json
from pathlib import Path

import pytest
import yaml

from platsched.kube import ConflictError, KubeClient, KubeError, get_kube_client

SERVER = "https://k8s.example.com:6443"


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.responses.pop(0)


def make_client(*responses):
    session = FakeSession(responses)
    return KubeClient(SERVER, token="token", ca_file=None, verify=True, session=session), session


def test_get_pod_returns_payload_and_sends_token():
    pod = {"metadata": {"name": "name", "namespace": "ns"}}
    client, session = make_client(FakeResponse(200, pod))
    assert client.get_pod("ns", "name") == pod
    method, url, kwargs = session.calls[0]
    assert method == "GET"
    assert url == SERVER + "/api/v1/namespaces/ns/pods/name"
    assert kwargs["headers"]["Authorization"] == "Bearer token"


def test_list_pods_returns_items():
    items = [{"metadata": {"name": "a"}}, {"metadata": {"name": "b"}}]
    client, _ = make_client(FakeResponse(200, {"items": items}))
    assert client.list_pods() == items


def test_update_conflict_raises_conflict_error():
    message = "please apply your changes to the latest version"
    client, session = make_client(FakeResponse(409, {"message": message}))
    pod = {"metadata": {"name": "p", "namespace": "ns"}}
    with pytest.raises(ConflictError) as info:
        client.update_pod(pod)
    assert message in str(info.value)
    assert info.value.status == 409
    assert session.calls[0][0] == "PUT"
    assert session.calls[0][2]["json"] == pod


def test_other_errors_raise_kube_error():
    client, _ = make_client(FakeResponse(404, {"message": "not here"}))
    with pytest.raises(KubeError) as info:
        client.get_node("missing")
    assert not isinstance(info.value, ConflictError)
    assert "not here" in str(info.value)


def test_update_pod_without_name_raises():
    client, session = make_client()
    with pytest.raises(KubeError):
        client.update_pod({"metadata": {}})
    assert session.calls == []


def test_bind_pod_sends_binding():
    client, session = make_client(FakeResponse(201, {}))
    client.bind_pod("ns", "pod", "uid-1", "node-1")
    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert url.endswith("/pods/pod/binding")
    body = kwargs["json"]
    assert body["kind"] == "Binding"
    assert body["metadata"] == {"name": "pod", "uid": "uid-1"}
    assert body["target"] == {"kind": "Node", "name": "node-1"}


def write_kubeconfig(path: Path, current="ctx"):
    config = {
        "apiVersion": "v1",
        "kind": "Config",
        "current-context": current,
        "contexts": [{"name": "ctx", "context": {"cluster": "c1", "user": "u1"}}],
        "clusters": [
            {
                "name": "c1",
                "cluster": {
                    "server": SERVER,
                    "certificate-authority-data": base64.b64encode(b"ca-bytes").decode(),
                },
            }
        ],
        "users": [{"name": "u1", "user": {"token": "token"}}],
    }
    path.write_text(yaml.safe_dump(config))
    return path


def test_from_kubeconfig_reads_current_context(tmp_path):
    path = write_kubeconfig(tmp_path / "config")
    client = KubeClient.from_kubeconfig(str(path))
    assert client.server == SERVER
    assert client.token == "token"
    assert Path(client.ca_file).read_bytes() == b"ca-bytes"
    assert client.verify is True


def test_from_kubeconfig_unknown_context(tmp_path):
    path = write_kubeconfig(tmp_path / "config", current="other")
    with pytest.raises(KubeError):
        KubeClient.from_kubeconfig(str(path))


def test_from_kubeconfig_missing_file(tmp_path):
    with pytest.raises(KubeError):
        KubeClient.from_kubeconfig(str(tmp_path / "absent"))


def test_in_cluster_requires_environment(monkeypatch):
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.delenv("KUBERNETES_SERVICE_PORT", raising=False)
    with pytest.raises(KubeError):
        KubeClient.in_cluster()


def test_get_kube_client_falls_back_to_file(monkeypatch, tmp_path):
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.delenv("KUBERNETES_SERVICE_PORT", raising=False)
    path = write_kubeconfig(tmp_path / "config")
    client = get_kube_client(str(path))
    assert client.server == SERVER