"""Pod inspection helpers for GPU resource requests."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any

from platsched.gpu.resource_map import INT64_MAX, ResourceMap

RESOURCE_PREFIX = "gpu.intel.com/"
INT64_MIN = -(2**63)

_QUANTITY = re.compile(r"^([+-]?[0-9.]+)([eE][+-]?[0-9]+|[a-zA-Z]*)$")
_BINARY_SUFFIXES = {
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}
_DECIMAL_SUFFIXES = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal(10**3),
    "M": Decimal(10**6),
    "G": Decimal(10**9),
    "T": Decimal(10**12),
    "P": Decimal(10**15),
    "E": Decimal(10**18),
}


def parse_quantity(value: Any) -> int:
    """Convert a Kubernetes quantity to an integer.

    Quantities that are not whole numbers or do not fit in 64 bits give 0.
    Malformed quantities raise ValueError.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity {value!r}")
    if isinstance(value, int):
        return value if INT64_MIN <= value <= INT64_MAX else 0
    text = str(value).strip()
    match = _QUANTITY.match(text)
    if not match:
        raise ValueError(f"invalid quantity {value!r}")
    number_text, suffix = match.groups()
    try:
        number = Decimal(number_text)
    except InvalidOperation as exc:
        raise ValueError(f"invalid quantity {value!r}") from exc
    if suffix in _BINARY_SUFFIXES:
        multiplier = Decimal(_BINARY_SUFFIXES[suffix])
    elif suffix in _DECIMAL_SUFFIXES:
        multiplier = _DECIMAL_SUFFIXES[suffix]
    elif suffix[:1] in ("e", "E"):
        multiplier = Decimal(10) ** int(suffix[1:])
    else:
        raise ValueError(f"invalid quantity suffix in {value!r}")
    result = number * multiplier
    if result != result.to_integral_value() or not INT64_MIN <= result <= INT64_MAX:
        return 0
    return int(result)


def _containers(pod: dict[str, Any]) -> list[dict[str, Any]]:
    return (pod.get("spec") or {}).get("containers") or []


def _requests(container: dict[str, Any]) -> dict[str, Any]:
    return (container.get("resources") or {}).get("requests") or {}


def container_requests(pod: dict[str, Any]) -> list[ResourceMap]:
    """Return one map of GPU resource requests per container, in order."""
    return [
        ResourceMap(
            {
                name: parse_quantity(quantity)
                for name, quantity in _requests(container).items()
                if name.startswith(RESOURCE_PREFIX)
            }
        )
        for container in _containers(pod)
    ]


def has_gpu_resources(pod: dict[str, Any] | None) -> bool:
    """Tell whether any container of the pod requests a GPU resource."""
    if pod is None:
        return False
    return any(
        name.startswith(RESOURCE_PREFIX)
        for container in _containers(pod)
        for name in _requests(container)
    )


def is_completed_pod(pod: dict[str, Any]) -> bool:
    """Tell whether the pod is being deleted or has finished running."""
    if (pod.get("metadata") or {}).get("deletionTimestamp") is not None:
        return True
    return (pod.get("status") or {}).get("phase") in ("Failed", "Succeeded")