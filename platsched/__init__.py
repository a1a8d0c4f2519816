"""Kubernetes scheduler extender for GPU-aware placement, with a telemetry metric cache."""

__version__ = "0.1.0"