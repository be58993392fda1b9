"""Broker synchronization."""

from clusterlink.syncer.propagator import SyncPropagator, is_managed

__all__ = [
    "SyncPropagator",
    "is_managed",
]
