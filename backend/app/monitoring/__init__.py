"""Metric registry and the metrics recorded by the service."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
