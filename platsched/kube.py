"""A small Kubernetes API client covering what the extenders need."""

from __future__ import annotations

import atexit
import base64
import binascii
import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Any
from urllib.parse import quote

import requests
import yaml

log = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
REQUEST_TIMEOUT = 30


class KubeError(Exception):
    """A failure talking to, or configuring access to, the API server."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ConflictError(KubeError):
    """The object was modified since it was read."""


def _remove_later(path: str) -> None:
    def _remove() -> None:
        with contextlib.suppress(OSError):
            os.unlink(path)

    atexit.register(_remove)


def _materialize(base: Path, path_value: Any, data_value: Any, suffix: str) -> str | None:
    """Return a file path for a kubeconfig file-or-inline-data pair."""
    if data_value:
        try:
            content = base64.b64decode(data_value, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise KubeError(f"invalid base64 data in kubeconfig: {exc}") from exc
        handle = tempfile.NamedTemporaryFile(prefix="platsched-", suffix=suffix, delete=False)
        with handle:
            handle.write(content)
        _remove_later(handle.name)
        return handle.name
    if path_value:
        candidate = Path(str(path_value))
        return str(candidate if candidate.is_absolute() else base / candidate)
    return None


def _named(entries: Any, name: str, kind: str) -> dict[str, Any]:
    for entry in entries or []:
        if isinstance(entry, dict) and entry.get("name") == name:
            return entry.get(kind) or {}
    raise KubeError(f"{kind} {name!r} not found in kubeconfig")


class KubeClient:
    """Talks JSON to the Kubernetes API server."""

    def __init__(
        self,
        server: str,
        token: str | None = None,
        ca_file: str | None = None,
        verify: bool = True,
        session: Any = None,
    ) -> None:
        self.server = server.rstrip("/")
        self.token = token
        self.ca_file = ca_file
        self.verify = verify
        self._session = session if session is not None else requests.Session()

    @classmethod
    def in_cluster(cls) -> KubeClient:
        """Configure from the service account of the pod we run in."""
        host = os.environ.get("KUBERNETES_SERVICE_HOST")
        port = os.environ.get("KUBERNETES_SERVICE_PORT")
        if not host or not port:
            raise KubeError(
                "unable to load in-cluster configuration, KUBERNETES_SERVICE_HOST "
                "and KUBERNETES_SERVICE_PORT must be defined"
            )
        try:
            token = (SERVICE_ACCOUNT_DIR / "token").read_text().strip()
        except OSError as exc:
            raise KubeError(f"cannot read service account token: {exc}") from exc
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        ca_path = SERVICE_ACCOUNT_DIR / "ca.crt"
        return cls(
            f"https://{host}:{port}",
            token=token,
            ca_file=str(ca_path) if ca_path.exists() else None,
        )

    @classmethod
    def from_kubeconfig(cls, path: str) -> KubeClient:
        """Configure from the current context of a kubeconfig file."""
        try:
            with open(path, encoding="utf-8") as stream:
                config = yaml.safe_load(stream) or {}
        except OSError as exc:
            raise KubeError(f"cannot read kubeconfig {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise KubeError(f"invalid kubeconfig {path}: {exc}") from exc
        if not isinstance(config, dict):
            raise KubeError(f"invalid kubeconfig {path}")
        current = config.get("current-context")
        if not current:
            raise KubeError("invalid configuration: no current context")
        context = _named(config.get("contexts"), current, "context")
        cluster = _named(config.get("clusters"), context.get("cluster", ""), "cluster")
        user = _named(config.get("users"), context.get("user", ""), "user") if context.get("user") else {}
        server = cluster.get("server")
        if not server:
            raise KubeError("invalid configuration: no server defined")

        base = Path(path).resolve().parent
        ca_file = _materialize(
            base, cluster.get("certificate-authority"), cluster.get("certificate-authority-data"), ".crt"
        )
        token = user.get("token")
        if not token and user.get("tokenFile"):
            token_path = _materialize(base, user["tokenFile"], None, "")
            try:
                token = Path(token_path).read_text().strip()
            except OSError as exc:
                raise KubeError(f"cannot read token file: {exc}") from exc

        session = requests.Session()
        cert = _materialize(base, user.get("client-certificate"), user.get("client-certificate-data"), ".crt")
        key = _materialize(base, user.get("client-key"), user.get("client-key-data"), ".key")
        if cert and key:
            session.cert = (cert, key)
        return cls(
            server,
            token=token,
            ca_file=ca_file,
            verify=not cluster.get("insecure-skip-tls-verify", False),
            session=session,
        )

    def _request(self, method: str, path: str, body: Any = None) -> Any:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        verify: bool | str = self.ca_file if (self.ca_file and self.verify) else self.verify
        try:
            response = self._session.request(
                method,
                self.server + path,
                json=body,
                headers=headers,
                verify=verify,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise KubeError(str(exc)) from exc
        if response.status_code >= 400:
            error = ConflictError if response.status_code == 409 else KubeError
            raise error(self._error_message(response), response.status_code)
        return response.json() if response.text else {}

    @staticmethod
    def _error_message(response: Any) -> str:
        try:
            message = response.json().get("message")
        except (ValueError, AttributeError):
            message = None
        return message or response.text or f"HTTP {response.status_code}"

    def get_node(self, name: str) -> dict[str, Any]:
        """Fetch a node object."""
        return self._request("GET", f"/api/v1/nodes/{quote(name, safe='')}")

    def get_pod(self, namespace: str, name: str) -> dict[str, Any]:
        """Fetch a pod object."""
        return self._request("GET", self._pod_path(namespace, name))

    def list_pods(self) -> list[dict[str, Any]]:
        """List pods in all namespaces."""
        return self._request("GET", "/api/v1/pods").get("items") or []

    def update_pod(self, pod: dict[str, Any]) -> dict[str, Any]:
        """Replace a pod object; raises :class:`ConflictError` if it is stale."""
        metadata = pod.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            raise KubeError("pod has no name")
        namespace = metadata.get("namespace") or "default"
        return self._request("PUT", self._pod_path(namespace, name), pod)

    def bind_pod(self, namespace: str, name: str, uid: str, node: str) -> dict[str, Any]:
        """Bind a pod to a node."""
        binding = {
            "apiVersion": "v1",
            "kind": "Binding",
            "metadata": {"name": name, "uid": uid},
            "target": {"kind": "Node", "name": node},
        }
        return self._request("POST", self._pod_path(namespace, name) + "/binding", binding)

    @staticmethod
    def _pod_path(namespace: str, name: str) -> str:
        return f"/api/v1/namespaces/{quote(namespace, safe='')}/pods/{quote(name, safe='')}"


def get_kube_client(kube_config: str) -> KubeClient:
    """Return an in-cluster client, falling back to the kubeconfig file."""
    try:
        return KubeClient.in_cluster()
    except KubeError:
        log.info("not in cluster - trying file-based configuration")
        return KubeClient.from_kubeconfig(kube_config)