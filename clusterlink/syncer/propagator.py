"""
Broker synchronization of published resources.

Moves resources between one member cluster and the broker:
- to the broker: EndpointSlices published by this cluster
- to the cluster: aggregated ServiceImports and EndpointSlices published by
  other clusters

Only managed objects (carrying the managed-by label) are ever touched, and a
cluster never imports its own slices back nor exports slices it imported.
"""

from typing import Any, Callable, Optional, Tuple

from clusterlink.api.types import EndpointSlice, ServiceImport
from clusterlink.constants import (
    LABEL_MANAGED_BY,
    LABEL_SERVICE_NAME,
    LABEL_SOURCE_CLUSTER,
    LABEL_SOURCE_NAMESPACE,
    LABEL_VALUE_MANAGED_BY,
)
from clusterlink.controller.workqueue import WorkQueue
from clusterlink.store.base import (
    ConflictError,
    NotFoundError,
    ResourceStore,
    WatchEvent,
)
from clusterlink.utils.logging import get_logger
from clusterlink.utils.retry import RetryConfig, is_retryable_error

logger = get_logger(__name__)

# (kind, namespace, name)
SyncKey = Tuple[str, str, str]


def is_managed(obj: Any) -> bool:
    """
    Check whether an object is owned by the agent.

    Args:
        obj: Resource with metadata

    Returns:
        True if the object carries the agent's managed-by label
    """
    return obj.metadata.labels.get(LABEL_MANAGED_BY) == LABEL_VALUE_MANAGED_BY


def source_cluster(obj: Any) -> Optional[str]:
    """Get the cluster an object was published from."""
    return obj.metadata.labels.get(LABEL_SOURCE_CLUSTER)


def _content(obj: Any) -> dict:
    data = obj.to_dict()
    data.pop("resourceVersion", None)
    return data


def _sync_key(obj: Any) -> SyncKey:
    return (type(obj).KIND, obj.metadata.namespace, obj.metadata.name)


def _service_key(endpoint_slice: EndpointSlice) -> Tuple[str, str]:
    labels = endpoint_slice.metadata.labels
    return (labels.get(LABEL_SOURCE_NAMESPACE), labels.get(LABEL_SERVICE_NAME))


class SyncPropagator:
    """
    Bidirectional syncer between a member cluster and the broker.

    Two independent work queues keep the directions apart, so an outage of
    one side does not stall the other.
    """

    def __init__(
        self,
        cluster_id: str,
        local: ResourceStore,
        broker: ResourceStore,
        retry_config: Optional[RetryConfig] = None,
        workers: int = 2,
    ):
        """
        Initialize propagator.

        Args:
            cluster_id: ID of the member cluster
            local: Member cluster store
            broker: Broker store
            retry_config: Backoff schedule for failed syncs
            workers: Worker tasks per direction
        """
        self.cluster_id = cluster_id
        self.local = local
        self.broker = broker
        self.workers = workers

        self.to_broker = WorkQueue(f"sync-to-broker-{cluster_id}", retry_config)
        self.to_local = WorkQueue(f"sync-to-local-{cluster_id}", retry_config)

        # Outcome of publishing this cluster's slices, called with the
        # (namespace, service name) a slice was built for.
        self.publish_failed_callback: Optional[Callable[[str, str, str], None]] = None
        self.published_callback: Optional[Callable[[str, str], None]] = None

        self._running = False

    async def start(self) -> None:
        """Start watching both stores and syncing."""
        if self._running:
            return

        self._running = True

        self.local.add_watch(EndpointSlice.KIND, self._on_local_endpoint_slice)
        self.broker.add_watch(EndpointSlice.KIND, self._on_broker_endpoint_slice)
        self.broker.add_watch(ServiceImport.KIND, self._on_broker_service_import)

        self.to_broker.start(self._sync_to_broker, workers=self.workers)
        self.to_local.start(self._sync_to_local, workers=self.workers)

        await self.resync()

        logger.info("SyncPropagator started", cluster_id=self.cluster_id)

    async def stop(self) -> None:
        """Stop watching and drain both queues."""
        self._running = False

        self.local.remove_watch(EndpointSlice.KIND, self._on_local_endpoint_slice)
        self.broker.remove_watch(EndpointSlice.KIND, self._on_broker_endpoint_slice)
        self.broker.remove_watch(ServiceImport.KIND, self._on_broker_service_import)

        await self.to_broker.shutdown()
        await self.to_local.shutdown()

        logger.info("SyncPropagator stopped", cluster_id=self.cluster_id)

    def is_idle(self) -> bool:
        return self.to_broker.is_idle() and self.to_local.is_idle()

    # Event handlers

    def _on_local_endpoint_slice(self, event: WatchEvent) -> None:
        self._route_endpoint_slice(event.obj)

    def _on_broker_endpoint_slice(self, event: WatchEvent) -> None:
        self._route_endpoint_slice(event.obj)

    def _on_broker_service_import(self, event: WatchEvent) -> None:
        if is_managed(event.obj):
            self.to_local.add(_sync_key(event.obj))

    def _route_endpoint_slice(self, obj: EndpointSlice) -> None:
        if not is_managed(obj):
            return

        if source_cluster(obj) == self.cluster_id:
            self.to_broker.add(_sync_key(obj))
        else:
            self.to_local.add(_sync_key(obj))

    async def resync(self) -> None:
        """Relist managed objects on both sides and queue them."""
        for obj in await self.local.list(
            EndpointSlice.KIND,
            labels={LABEL_MANAGED_BY: LABEL_VALUE_MANAGED_BY},
        ):
            self._route_endpoint_slice(obj)

        for obj in await self.local.list(
            ServiceImport.KIND,
            labels={LABEL_MANAGED_BY: LABEL_VALUE_MANAGED_BY},
        ):
            self.to_local.add(_sync_key(obj))

        for obj in await self.broker.list(EndpointSlice.KIND):
            self._route_endpoint_slice(obj)

        for obj in await self.broker.list(ServiceImport.KIND):
            if is_managed(obj):
                self.to_local.add(_sync_key(obj))

    # Sync handlers

    async def _sync_to_broker(self, key: SyncKey) -> None:
        """
        Mirror an EndpointSlice published by this cluster to the broker.

        Once a key has used up its retries it is dropped until the next
        change or resync. A slice that could not be published is reported
        through publish_failed_callback.
        """
        kind, namespace, name = key

        source = await self.local.get(kind, namespace, name)
        if source is not None and (not is_managed(source) or source_cluster(source) != self.cluster_id):
            return

        try:
            await self._mirror(key, source, self.broker)

        except Exception as e:
            if not is_retryable_error(e) or not self.to_broker.retries_exhausted(key):
                raise

            logger.error(
                "Giving up publishing EndpointSlice until next change",
                cluster_id=self.cluster_id,
                namespace=namespace,
                name=name,
                attempts=self.to_broker.num_requeues(key) + 1,
                error=str(e),
            )
            if source is not None and self.publish_failed_callback:
                self.publish_failed_callback(
                    *_service_key(source),
                    f"Unable to publish the EndpointSlice to the broker: {e}",
                )
            return

        if source is not None and self.published_callback:
            self.published_callback(*_service_key(source))

    async def _sync_to_local(self, key: SyncKey) -> None:
        """Mirror a broker ServiceImport or foreign EndpointSlice into this cluster."""
        kind, namespace, name = key

        source = await self.broker.get(kind, namespace, name)
        if source is not None:
            if not is_managed(source):
                return
            if kind == EndpointSlice.KIND and source_cluster(source) == self.cluster_id:
                return

        await self._mirror(key, source, self.local)

    def _owns(self, existing: Any, dest: ResourceStore) -> bool:
        """Whether an existing managed object in dest is written from this side."""
        if not is_managed(existing):
            return False
        if type(existing).KIND != EndpointSlice.KIND:
            return True
        if dest is self.broker:
            return source_cluster(existing) == self.cluster_id
        return source_cluster(existing) != self.cluster_id

    async def _mirror(self, key: SyncKey, source: Optional[Any], dest: ResourceStore) -> None:
        """
        Make dest hold a copy of source, or nothing when source is gone.

        Args:
            key: (kind, namespace, name)
            source: Object to copy, None to delete the copy
            dest: Store to write to
        """
        kind, namespace, name = key

        existing = await dest.get(kind, namespace, name)
        if existing is not None and not self._owns(existing, dest):
            return

        if source is None:
            if existing is None:
                return

            try:
                await dest.delete(
                    kind,
                    namespace,
                    name,
                    resource_version=existing.metadata.resource_version,
                )
            except NotFoundError:
                return

            logger.debug(
                "Deleted synced copy",
                cluster_id=self.cluster_id,
                store=dest.name,
                kind=kind,
                namespace=namespace,
                name=name,
            )
            return

        if existing is None:
            source.metadata.resource_version = 0
            await dest.create(source)

        elif _content(existing) != _content(source):
            source.metadata.resource_version = existing.metadata.resource_version
            try:
                await dest.update(source)
            except NotFoundError as e:
                raise ConflictError(f"{kind} {namespace}/{name} deleted during sync") from e

        else:
            return

        logger.debug(
            "Synced copy",
            cluster_id=self.cluster_id,
            store=dest.name,
            kind=kind,
            namespace=namespace,
            name=name,
        )
