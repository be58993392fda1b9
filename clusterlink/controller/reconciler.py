"""
ServiceExport reconciliation.

Drives export of one cluster's services from three event streams
(ServiceExport, Service, Endpoints). Every event reduces to a
(namespace, name) key; reconciling a key reads current state and converges:

1. validate the Service
2. upsert or withdraw this cluster's contribution on the broker
3. create, update or delete the local EndpointSlice
4. write the ServiceExport conditions if they changed
"""

import asyncio
import functools
from typing import Dict, Optional, Set, Tuple

from clusterlink.api.types import (
    Endpoints,
    EndpointSlice,
    Service,
    ServiceExport,
)
from clusterlink.constants import (
    LABEL_MANAGED_BY,
    LABEL_SERVICE_NAME,
    LABEL_SOURCE_CLUSTER,
    LABEL_SOURCE_NAMESPACE,
    LABEL_VALUE_MANAGED_BY,
    REASON_NO_SERVICE_IMPORT,
    SERVICE_EXPORT_SYNCED,
    SERVICE_EXPORT_VALID,
)
from clusterlink.controller.aggregation import ServiceAggregationManager
from clusterlink.controller.conditions import ConditionTracker
from clusterlink.controller.endpoints import (
    EndpointAggregator,
    endpoint_slice_name,
    slice_changed,
)
from clusterlink.controller.validator import ExportValidator
from clusterlink.controller.workqueue import WorkQueue
from clusterlink.store.base import (
    NotFoundError,
    ResourceStore,
    WatchEvent,
    WatchEventType,
)
from clusterlink.utils.config import AgentConfig
from clusterlink.utils.logging import get_logger
from clusterlink.utils.retry import RetryConfig, is_retryable_error

logger = get_logger(__name__)

Key = Tuple[str, str]


class ServiceExportController:
    """
    Per-cluster export controller.

    Responsibilities:
    - Validate exported Services
    - Maintain this cluster's contribution to aggregated ServiceImports
    - Publish the cluster's EndpointSlice for each exported Service
    - Keep ServiceExport conditions in line with the outcome
    - Periodically relist to heal missed events
    """

    def __init__(
        self,
        local: ResourceStore,
        broker: ResourceStore,
        config: AgentConfig,
    ):
        """
        Initialize controller.

        Args:
            local: Store of the cluster this controller runs in
            broker: Broker store
            config: Agent settings
        """
        self.cluster_id = config.cluster_id
        self.local = local
        self.broker = broker
        self.config = config

        self.validator = ExportValidator()
        self.aggregator = EndpointAggregator(config.cluster_id)
        self.aggregation = ServiceAggregationManager(
            broker,
            conflict_retries=config.conflict_retries,
        )

        self.retry_config = RetryConfig(
            max_retries=config.max_retries,
            retry_backoff_ms=config.retry_backoff_ms,
            retry_backoff_max_ms=config.retry_backoff_max_ms,
            retry_jitter_ms=config.retry_jitter_ms,
        )
        self.queue = WorkQueue(f"service-export-{config.cluster_id}", self.retry_config)

        # Services whose EndpointSlice could not be published to the broker
        self._publish_failures: Dict[Key, str] = {}
        # Withdrawals still running after their reconcile was cancelled
        self._withdrawals: Set[asyncio.Task] = set()

        self._resync_task: Optional[asyncio.Task] = None
        self._running = False

        logger.info(
            "ServiceExportController initialized",
            cluster_id=self.cluster_id,
            workers=config.workers,
        )

    async def start(self) -> None:
        """Start watching and processing."""
        if self._running:
            return

        self._running = True

        self.local.add_watch(ServiceExport.KIND, self._on_service_export)
        self.local.add_watch(Service.KIND, self._on_service)
        self.local.add_watch(Endpoints.KIND, self._on_endpoints)
        self.local.add_watch(EndpointSlice.KIND, self._on_endpoint_slice)

        self.queue.start(self.reconcile, workers=self.config.workers)

        await self.resync()

        if self.config.resync_period_seconds > 0:
            self._resync_task = asyncio.create_task(self._resync_loop())

        logger.info("ServiceExportController started", cluster_id=self.cluster_id)

    async def stop(self) -> None:
        """Stop watching and drain the work queue."""
        self._running = False

        if self._resync_task:
            self._resync_task.cancel()
            try:
                await self._resync_task
            except asyncio.CancelledError:
                pass
            self._resync_task = None

        self.local.remove_watch(ServiceExport.KIND, self._on_service_export)
        self.local.remove_watch(Service.KIND, self._on_service)
        self.local.remove_watch(Endpoints.KIND, self._on_endpoints)
        self.local.remove_watch(EndpointSlice.KIND, self._on_endpoint_slice)

        if self._withdrawals:
            await asyncio.gather(*self._withdrawals, return_exceptions=True)

        await self.queue.shutdown()

        logger.info("ServiceExportController stopped", cluster_id=self.cluster_id)

    # Event handlers

    def _on_service_export(self, event: WatchEvent) -> None:
        # Status writes show up as MODIFIED events and need no reconcile.
        if event.type == WatchEventType.MODIFIED:
            return
        self.queue.add(event.obj.metadata.key())

    def _on_service(self, event: WatchEvent) -> None:
        self.queue.add(event.obj.metadata.key())

    def _on_endpoints(self, event: WatchEvent) -> None:
        self.queue.add(event.obj.metadata.key())

    def _on_endpoint_slice(self, event: WatchEvent) -> None:
        labels = event.obj.metadata.labels
        if labels.get(LABEL_MANAGED_BY) != LABEL_VALUE_MANAGED_BY:
            return
        if labels.get(LABEL_SOURCE_CLUSTER) != self.cluster_id:
            return

        self.queue.add((labels.get(LABEL_SOURCE_NAMESPACE), labels.get(LABEL_SERVICE_NAME)))

    # Broker publishing outcome

    def publish_failed(self, namespace: str, name: str, message: str) -> None:
        """
        Record that a service's EndpointSlice could not reach the broker.

        The export reports Synced=False/ExportFailed until published() is
        called for the same service.

        Args:
            namespace: Service namespace
            name: Service name
            message: Failure description for the condition
        """
        key = (namespace, name)
        self._publish_failures[key] = message
        self.queue.add(key)

    def published(self, namespace: str, name: str) -> None:
        """Clear a recorded publishing failure once the slice is on the broker."""
        key = (namespace, name)
        if self._publish_failures.pop(key, None) is not None:
            self.queue.add(key)

    # Resync

    async def _resync_loop(self) -> None:
        """Periodically relist everything this controller is responsible for."""
        while self._running:
            try:
                await asyncio.sleep(self.config.resync_period_seconds)
                await self.resync()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "Error in resync loop",
                    cluster_id=self.cluster_id,
                    error=str(e),
                )

    async def resync(self) -> None:
        """
        Enqueue every key that may need reconciling.

        Covers existing ServiceExports, EndpointSlices this cluster
        published, and broker aggregates this cluster contributes to, so
        stale contributions left by missed deletions are withdrawn.
        """
        keys: Set[Key] = set()

        for service_export in await self.local.list(ServiceExport.KIND):
            keys.add(service_export.metadata.key())

        published = await self.local.list(
            EndpointSlice.KIND,
            labels={
                LABEL_MANAGED_BY: LABEL_VALUE_MANAGED_BY,
                LABEL_SOURCE_CLUSTER: self.cluster_id,
            },
        )
        for endpoint_slice in published:
            labels = endpoint_slice.metadata.labels
            keys.add((labels[LABEL_SOURCE_NAMESPACE], labels[LABEL_SERVICE_NAME]))

        try:
            keys |= await self.aggregation.list_contributions(self.cluster_id)
        except Exception as e:
            if not is_retryable_error(e):
                raise
            logger.warning(
                "Could not relist broker contributions",
                cluster_id=self.cluster_id,
                error=str(e),
            )

        for key in sorted(keys):
            self.queue.add(key)

        logger.debug("Resync enqueued keys", cluster_id=self.cluster_id, count=len(keys))

    # Reconciliation

    async def reconcile(self, key: Key) -> None:
        """
        Converge one exported service.

        Args:
            key: (namespace, name) of the ServiceExport / Service

        Raises:
            Exception: Retryable failures while the retry budget lasts
        """
        namespace, name = key

        service_export = await self.local.get(ServiceExport.KIND, namespace, name)

        if service_export is None:
            if await self._unexport(namespace, name):
                logger.info(
                    "Unexported service",
                    cluster_id=self.cluster_id,
                    namespace=namespace,
                    name=name,
                )
            return

        tracker = ConditionTracker(service_export.conditions)

        try:
            await self._reconcile_export(namespace, name, tracker)

        except Exception as e:
            if not is_retryable_error(e):
                raise

            if not self.queue.retries_exhausted(key):
                await self._write_status(namespace, name, tracker)
                raise

            logger.error(
                "Giving up exporting service until next change",
                cluster_id=self.cluster_id,
                namespace=namespace,
                name=name,
                attempts=self.queue.num_requeues(key) + 1,
                error=str(e),
            )
            tracker.set_export_failed(f"Unable to export the service: {e}")

        await self._write_status(namespace, name, tracker)

    async def _reconcile_export(self, namespace: str, name: str, tracker: ConditionTracker) -> None:
        """Converge an existing ServiceExport, recording the outcome in tracker."""
        service = await self.local.get(Service.KIND, namespace, name)

        if service is None:
            withdrawn = await self._unexport(namespace, name)
            # Validity describes a Service that no longer exists.
            tracker.remove(SERVICE_EXPORT_VALID)

            synced = tracker.get(SERVICE_EXPORT_SYNCED)
            if withdrawn or tracker.is_true(SERVICE_EXPORT_SYNCED):
                tracker.set_unexported()
            elif synced is None or synced.reason != REASON_NO_SERVICE_IMPORT:
                tracker.set_service_unavailable()

            return

        result = self.validator.validate(service)
        tracker.set_valid(result.valid, result.reason, result.message)

        if not result.valid:
            withdrawn = await self._unexport(namespace, name)

            if withdrawn or tracker.get(SERVICE_EXPORT_SYNCED) is not None:
                tracker.set_unexported()

            logger.info(
                "Service not exportable",
                cluster_id=self.cluster_id,
                namespace=namespace,
                name=name,
                reason=result.reason,
            )
            return

        await self.aggregation.upsert_contribution(
            namespace,
            name,
            self.cluster_id,
            import_type=self.validator.import_type_for(service),
            ports=service.ports,
        )

        await self._sync_endpoint_slice(service)

        failure = self._publish_failures.get((namespace, name))
        if failure is not None:
            tracker.set_export_failed(failure)
        elif tracker.set_synced():
            logger.info(
                "Exported service",
                cluster_id=self.cluster_id,
                namespace=namespace,
                name=name,
            )

    async def _sync_endpoint_slice(self, service: Service) -> None:
        """Create or update the EndpointSlice published for service."""
        namespace, name = service.metadata.key()

        endpoints = await self.local.get(Endpoints.KIND, namespace, name)
        desired = self.aggregator.build_endpoint_slice(service, endpoints)

        existing = await self.local.get(EndpointSlice.KIND, namespace, desired.metadata.name)

        if existing is None:
            await self.local.create(desired)
        elif slice_changed(existing, desired):
            desired.metadata.resource_version = existing.metadata.resource_version
            await self.local.update(desired)
        else:
            return

        logger.debug(
            "Published EndpointSlice",
            cluster_id=self.cluster_id,
            namespace=namespace,
            name=desired.metadata.name,
            ready=[e.ready for e in desired.endpoints],
        )

    async def _unexport(self, namespace: str, name: str) -> bool:
        """
        Withdraw the contribution and remove the published EndpointSlice.

        Shielded so cancelling the caller cannot leave a partially applied
        withdrawal behind.

        Returns:
            True if a contribution was withdrawn
        """
        task = asyncio.ensure_future(self._withdraw(namespace, name))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            self._withdrawals.add(task)
            task.add_done_callback(
                functools.partial(self._orphaned_withdrawal_done, (namespace, name))
            )
            raise

    def _orphaned_withdrawal_done(self, key: Key, task: asyncio.Task) -> None:
        """Report a withdrawal that finished after its reconcile was cancelled."""
        self._withdrawals.discard(task)

        if task.cancelled() or task.exception() is None:
            return

        namespace, name = key
        logger.error(
            "Withdrawal failed after reconcile was cancelled",
            cluster_id=self.cluster_id,
            namespace=namespace,
            name=name,
            error=str(task.exception()),
        )
        self.queue.add_rate_limited(key)

    async def _withdraw(self, namespace: str, name: str) -> bool:
        self._publish_failures.pop((namespace, name), None)

        withdrawn = await self.aggregation.withdraw_contribution(namespace, name, self.cluster_id)

        try:
            await self.local.delete(
                EndpointSlice.KIND,
                namespace,
                endpoint_slice_name(name, self.cluster_id),
            )
        except NotFoundError:
            pass

        return withdrawn

    async def _write_status(self, namespace: str, name: str, tracker: ConditionTracker) -> None:
        """Persist conditions if they changed."""
        if not tracker.changed:
            return

        try:
            await self.local.update_status(
                ServiceExport.KIND,
                namespace,
                name,
                tracker.conditions(),
            )
        except NotFoundError:
            logger.debug(
                "ServiceExport deleted before status write",
                cluster_id=self.cluster_id,
                namespace=namespace,
                name=name,
            )
