"""Request and response types exchanged with the Kubernetes scheduler."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


def _load_object(data: Any) -> dict[str, Any]:
    """Decode ``data`` into a dict whose keys are lower-cased.

    Field names are matched case-insensitively, as the scheduler sends
    capitalised names while other clients may not.
    """
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    if isinstance(data, str):
        data = json.loads(data)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError("expected a JSON object")
    return {str(key).lower(): value for key, value in data.items()}


def _string(fields: Mapping[str, Any], name: str) -> str:
    value = fields.get(name.lower())
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {name} must be a string")
    return value


def _optional_object(fields: Mapping[str, Any], name: str) -> dict[str, Any] | None:
    value = fields.get(name.lower())
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ValueError(f"field {name} must be an object")
    return dict(value)


def _optional_names(fields: Mapping[str, Any], name: str) -> list[str] | None:
    value = fields.get(name.lower())
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"field {name} must be a list of strings")
    return list(value)


@dataclass
class HostPriority:
    """The priority of scheduling to a host; higher is better."""

    host: str
    score: int


@dataclass
class Args:
    """Arguments sent by the scheduler to filter or prioritize nodes for a pod."""

    pod: dict[str, Any] = field(default_factory=dict)
    nodes: dict[str, Any] | None = None
    node_names: list[str] | None = None

    @classmethod
    def from_json(cls, data: Any) -> Args:
        """Build from a JSON document (str, bytes or an already decoded mapping)."""
        fields = _load_object(data)
        return cls(
            pod=_optional_object(fields, "Pod") or {},
            nodes=_optional_object(fields, "Nodes"),
            node_names=_optional_names(fields, "NodeNames"),
        )


@dataclass
class FilterResult:
    """The filtering answer sent back to the scheduler."""

    nodes: dict[str, Any] | None = None
    node_names: list[str] | None = None
    failed_nodes: dict[str, str] | None = None
    error: str = ""

    def to_json(self) -> dict[str, Any]:
        """Return the JSON-ready representation used on the wire."""
        return {
            "Nodes": self.nodes,
            "NodeNames": self.node_names,
            "FailedNodes": self.failed_nodes,
            "Error": self.error,
        }


@dataclass
class BindingArgs:
    """Arguments for binding a pod to a node."""

    pod_name: str = ""
    pod_namespace: str = ""
    pod_uid: str = ""
    node: str = ""

    @classmethod
    def from_json(cls, data: Any) -> BindingArgs:
        """Build from a JSON document (str, bytes or an already decoded mapping)."""
        fields = _load_object(data)
        return cls(
            pod_name=_string(fields, "PodName"),
            pod_namespace=_string(fields, "PodNamespace"),
            pod_uid=_string(fields, "PodUID"),
            node=_string(fields, "Node"),
        )


@dataclass
class BindingResult:
    """The binding answer sent back to the scheduler."""

    error: str = ""

    def to_json(self) -> dict[str, Any]:
        """Return the JSON-ready representation used on the wire."""
        return {"Error": self.error}