"""
clusterlink - multi-cluster service export.

Each member cluster runs an agent that:
- Validates Services declared for export through ServiceExports
- Aggregates per-cluster contributions into ServiceImports on a shared broker
- Publishes per-cluster EndpointSlices with backend readiness
- Imports aggregated ServiceImports and other clusters' EndpointSlices
- Reports export state through Valid / Synced conditions
"""

__version__ = "0.1.0"

from clusterlink.agent import ClusterAgent
from clusterlink.controller import ServiceExportController
from clusterlink.syncer import SyncPropagator

__all__ = [
    "ClusterAgent",
    "ServiceExportController",
    "SyncPropagator",
]
