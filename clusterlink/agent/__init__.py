"""Per-cluster agent."""

from clusterlink.agent.agent import ClusterAgent

__all__ = [
    "ClusterAgent",
]
