"""
Service aggregation on the broker.

The aggregated ServiceImport for a (namespace, name) is the only object
written by every cluster. Each cluster owns exactly one entry in its
contribution list and mutates the object through read-modify-write with a
conditional update, so concurrent contributions merge instead of clobbering
each other.
"""

import copy
from typing import List, Optional, Set, Tuple

from clusterlink.api.types import (
    ClusterStatus,
    ObjectMeta,
    ServiceImport,
    ServiceImportType,
    ServicePort,
)
from clusterlink.constants import LABEL_MANAGED_BY, LABEL_VALUE_MANAGED_BY
from clusterlink.store.base import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ResourceStore,
)
from clusterlink.utils.logging import get_logger

logger = get_logger(__name__)


def _normalize(service_import: ServiceImport) -> ServiceImport:
    """
    Derive the aggregate fields from the contribution records.

    Clusters are sorted by ID, the aggregate type is taken from the first
    cluster and ports are the sorted union of all contributed ports. The
    result only depends on the set of records, never on merge order.
    """
    service_import.clusters.sort(key=lambda c: c.cluster)

    if service_import.clusters:
        service_import.type = service_import.clusters[0].type

    ports = {}
    for cluster in service_import.clusters:
        for port in cluster.ports:
            ports.setdefault(port.sort_key(), port)
    service_import.ports = [ports[k] for k in sorted(ports)]

    return service_import


def merge_contribution(service_import: ServiceImport, contribution: ClusterStatus) -> ServiceImport:
    """
    Add or replace one cluster's record.

    Args:
        service_import: Current aggregate
        contribution: The cluster's record

    Returns:
        New aggregate; the input is left untouched
    """
    merged = copy.deepcopy(service_import)
    merged.clusters = [c for c in merged.clusters if c.cluster != contribution.cluster]
    merged.clusters.append(copy.deepcopy(contribution))
    return _normalize(merged)


def remove_contribution(service_import: ServiceImport, cluster_id: str) -> ServiceImport:
    """
    Remove one cluster's record.

    Args:
        service_import: Current aggregate
        cluster_id: Cluster to remove

    Returns:
        New aggregate; the input is left untouched
    """
    remaining = copy.deepcopy(service_import)
    remaining.clusters = [c for c in remaining.clusters if c.cluster != cluster_id]
    return _normalize(remaining)


def _same_aggregate(a: ServiceImport, b: ServiceImport) -> bool:
    return a.type == b.type and a.ports == b.ports and a.clusters == b.clusters


class ServiceAggregationManager:
    """
    Maintains aggregated ServiceImports on the broker.

    Responsibilities:
    - Create the aggregate on the first contribution
    - Merge and withdraw per-cluster records without disturbing others
    - Delete the aggregate when the last record is withdrawn
    - Relist contributions for resync
    """

    def __init__(self, broker: ResourceStore, conflict_retries: int = 10):
        """
        Initialize aggregation manager.

        Args:
            broker: Broker store
            conflict_retries: Re-read attempts after a lost conditional write
        """
        self.broker = broker
        self.conflict_retries = conflict_retries

    async def upsert_contribution(
        self,
        namespace: str,
        name: str,
        cluster_id: str,
        import_type: ServiceImportType = ServiceImportType.CLUSTER_SET_IP,
        ports: Optional[List[ServicePort]] = None,
    ) -> ServiceImport:
        """
        Add or confirm a cluster's contribution.

        Returns only after the contribution is committed on the broker.

        Args:
            namespace: Service namespace
            name: Service name
            cluster_id: Contributing cluster
            import_type: Aggregation type of the cluster's service
            ports: Ports of the cluster's service

        Returns:
            Committed aggregate

        Raises:
            ConflictError: If every attempt lost against a concurrent writer
            StoreUnavailableError: If the broker cannot be reached
        """
        contribution = ClusterStatus(
            cluster=cluster_id,
            type=import_type,
            ports=sorted(ports or [], key=ServicePort.sort_key),
        )

        for attempt in range(self.conflict_retries + 1):
            current = await self.broker.get(ServiceImport.KIND, namespace, name)

            if current is None:
                desired = merge_contribution(
                    ServiceImport(
                        metadata=ObjectMeta(
                            name=name,
                            namespace=namespace,
                            labels={LABEL_MANAGED_BY: LABEL_VALUE_MANAGED_BY},
                        ),
                    ),
                    contribution,
                )

                try:
                    created = await self.broker.create(desired)
                except AlreadyExistsError:
                    continue

                logger.info(
                    "Created aggregated ServiceImport",
                    namespace=namespace,
                    name=name,
                    cluster_id=cluster_id,
                )

                return created

            merged = merge_contribution(current, contribution)
            if _same_aggregate(current, merged):
                return current

            try:
                updated = await self.broker.update(merged)
            except (ConflictError, NotFoundError) as e:
                logger.debug(
                    "Contribution update lost, retrying",
                    namespace=namespace,
                    name=name,
                    cluster_id=cluster_id,
                    attempt=attempt,
                    error=str(e),
                )
                continue

            logger.info(
                "Merged contribution into ServiceImport",
                namespace=namespace,
                name=name,
                cluster_id=cluster_id,
                clusters=updated.cluster_ids(),
            )

            return updated

        raise ConflictError(
            f"could not record contribution of {cluster_id} to {namespace}/{name} "
            f"after {self.conflict_retries + 1} attempts"
        )

    async def withdraw_contribution(self, namespace: str, name: str, cluster_id: str) -> bool:
        """
        Remove a cluster's contribution.

        Deletes the aggregate when no contribution remains.

        Args:
            namespace: Service namespace
            name: Service name
            cluster_id: Withdrawing cluster

        Returns:
            True if the cluster had a contribution

        Raises:
            ConflictError: If every attempt lost against a concurrent writer
            StoreUnavailableError: If the broker cannot be reached
        """
        for attempt in range(self.conflict_retries + 1):
            current = await self.broker.get(ServiceImport.KIND, namespace, name)

            if current is None or cluster_id not in current.cluster_ids():
                return False

            remaining = remove_contribution(current, cluster_id)

            try:
                if remaining.clusters:
                    await self.broker.update(remaining)
                else:
                    await self.broker.delete(
                        ServiceImport.KIND,
                        namespace,
                        name,
                        resource_version=current.metadata.resource_version,
                    )
            except ConflictError as e:
                logger.debug(
                    "Contribution withdrawal lost, retrying",
                    namespace=namespace,
                    name=name,
                    cluster_id=cluster_id,
                    attempt=attempt,
                    error=str(e),
                )
                continue
            except NotFoundError:
                return True

            logger.info(
                "Withdrew contribution from ServiceImport",
                namespace=namespace,
                name=name,
                cluster_id=cluster_id,
                deleted=not remaining.clusters,
            )

            return True

        raise ConflictError(
            f"could not withdraw contribution of {cluster_id} from {namespace}/{name} "
            f"after {self.conflict_retries + 1} attempts"
        )

    async def get_contributors(self, namespace: str, name: str) -> Set[str]:
        """
        Get the clusters currently contributing to a service.

        Returns:
            Set of cluster IDs (empty if the aggregate does not exist)
        """
        current = await self.broker.get(ServiceImport.KIND, namespace, name)
        if current is None:
            return set()
        return set(current.cluster_ids())

    async def list_contributions(self, cluster_id: str) -> Set[Tuple[str, str]]:
        """
        Relist every aggregate a cluster contributes to.

        Args:
            cluster_id: Cluster ID

        Returns:
            Set of (namespace, name) keys
        """
        service_imports = await self.broker.list(ServiceImport.KIND)
        return {
            si.metadata.key()
            for si in service_imports
            if cluster_id in si.cluster_ids()
        }
