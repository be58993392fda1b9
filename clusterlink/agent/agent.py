"""
Per-cluster agent.

Wires the export controller and the broker syncer for one member cluster and
runs them on the current event loop.
"""

from typing import Optional

from clusterlink.controller.reconciler import ServiceExportController
from clusterlink.store.base import ResourceStore
from clusterlink.syncer.propagator import SyncPropagator
from clusterlink.utils.config import AgentConfig, Config
from clusterlink.utils.logging import get_logger

logger = get_logger(__name__)


class ClusterAgent:
    """
    Composition root for one member cluster.

    Responsibilities:
    - Export this cluster's services (ServiceExportController)
    - Mirror published resources to and from the broker (SyncPropagator)
    """

    def __init__(
        self,
        config: AgentConfig,
        local: ResourceStore,
        broker: ResourceStore,
    ):
        """
        Initialize agent.

        Args:
            config: Agent settings
            local: Store of this cluster
            broker: Broker store shared by all clusters
        """
        self.config = config
        self.cluster_id = config.cluster_id

        self.controller = ServiceExportController(local, broker, config)
        self.propagator = SyncPropagator(
            config.cluster_id,
            local,
            broker,
            retry_config=self.controller.retry_config,
            workers=config.workers,
        )
        self.propagator.publish_failed_callback = self.controller.publish_failed
        self.propagator.published_callback = self.controller.published

        self._started = False

    @classmethod
    def from_config(
        cls,
        config: Config,
        local: ResourceStore,
        broker: ResourceStore,
        cluster_id: Optional[str] = None,
    ) -> "ClusterAgent":
        """
        Build an agent from loaded configuration.

        Args:
            config: Loaded configuration
            local: Store of this cluster
            broker: Broker store
            cluster_id: Overrides agent.cluster_id when given

        Returns:
            Agent (not started)
        """
        return cls(AgentConfig.from_config(config, cluster_id=cluster_id), local, broker)

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start syncing and exporting."""
        if self._started:
            return

        # The propagator must be watching before the controller publishes
        # its first slices.
        await self.propagator.start()
        await self.controller.start()

        self._started = True

        logger.info("Cluster agent started", cluster_id=self.cluster_id)

    async def stop(self) -> None:
        """Stop exporting and syncing."""
        if not self._started:
            return

        await self.controller.stop()
        await self.propagator.stop()

        self._started = False

        logger.info("Cluster agent stopped", cluster_id=self.cluster_id)

    async def resync(self) -> None:
        """Relist everything the agent is responsible for."""
        await self.controller.resync()
        await self.propagator.resync()

    def is_idle(self) -> bool:
        """Whether no work is queued, delayed or running."""
        return self.controller.queue.is_idle() and self.propagator.is_idle()
