"""Observability: Prometheus metrics for model calls, JSON recovery and agent loops."""

from deckgen.observability.metrics import metrics

__all__ = ["metrics"]
