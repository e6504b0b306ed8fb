"""Derive per-workload autoscaling objects from cluster-scoped AutoPolicy templates."""

__version__ = "0.1.0"
