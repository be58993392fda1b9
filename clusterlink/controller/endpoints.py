"""
Endpoint aggregation.

Converts a cluster's backend Endpoints into the EndpointSlice published for
other clusters. An artifact is always produced, even without ready backends,
so consumers can tell "no healthy backends" apart from "service gone".
"""

from typing import Dict, List, Optional

from clusterlink.api.types import (
    AddressType,
    Endpoint,
    Endpoints,
    EndpointSlice,
    ObjectMeta,
    Service,
)
from clusterlink.constants import (
    LABEL_MANAGED_BY,
    LABEL_SERVICE_NAME,
    LABEL_SOURCE_CLUSTER,
    LABEL_SOURCE_NAMESPACE,
    LABEL_VALUE_MANAGED_BY,
)


def endpoint_slice_name(name: str, cluster_id: str) -> str:
    """
    Name of the EndpointSlice a cluster publishes for a service.

    The cluster ID is always part of the name, so slices from different
    clusters for the same service never collide and a slice keeps its name
    when more clusters start contributing.

    Args:
        name: Service name
        cluster_id: Source cluster ID

    Returns:
        EndpointSlice name
    """
    return f"{name}-{cluster_id}"


def endpoint_slice_labels(namespace: str, name: str, cluster_id: str) -> Dict[str, str]:
    """
    Labels identifying a published EndpointSlice.

    Args:
        namespace: Source namespace
        name: Service name
        cluster_id: Source cluster ID

    Returns:
        Label map
    """
    return {
        LABEL_MANAGED_BY: LABEL_VALUE_MANAGED_BY,
        LABEL_SOURCE_CLUSTER: cluster_id,
        LABEL_SERVICE_NAME: name,
        LABEL_SOURCE_NAMESPACE: namespace,
    }


class EndpointAggregator:
    """
    Builds per-cluster EndpointSlices from Services and their Endpoints.

    Modes:
    - Headless: one endpoint per backend address, readiness mirrored 1:1
    - ClusterIP: a single endpoint carrying the cluster IP, ready when any
      backend is ready
    """

    def __init__(self, cluster_id: str):
        """
        Initialize aggregator.

        Args:
            cluster_id: Cluster the slices are published from
        """
        self.cluster_id = cluster_id

    def build_endpoint_slice(
        self,
        service: Service,
        endpoints: Optional[Endpoints],
    ) -> EndpointSlice:
        """
        Build the EndpointSlice for a service.

        Args:
            service: Exported service
            endpoints: Backend endpoints, None if not created yet

        Returns:
            EndpointSlice to publish
        """
        namespace, name = service.metadata.key()

        backends = endpoints.backends() if endpoints is not None else []

        if service.is_headless():
            slice_endpoints = [
                Endpoint(addresses=[address.ip], ready=ready, hostname=address.hostname)
                for address, ready in backends
            ]
        elif not service.cluster_ip:
            # Nothing to route to until a cluster IP is allocated.
            slice_endpoints = []
        else:
            slice_endpoints = [
                Endpoint(
                    addresses=[service.cluster_ip],
                    ready=any(ready for _, ready in backends),
                )
            ]

        return EndpointSlice(
            metadata=ObjectMeta(
                name=endpoint_slice_name(name, self.cluster_id),
                namespace=namespace,
                labels=endpoint_slice_labels(namespace, name, self.cluster_id),
            ),
            address_type=self._address_type(slice_endpoints),
            endpoints=slice_endpoints,
            ports=list(service.ports),
        )

    @staticmethod
    def _address_type(slice_endpoints: List[Endpoint]) -> AddressType:
        for endpoint in slice_endpoints:
            if endpoint.addresses:
                return AddressType.for_address(endpoint.addresses[0])
        return AddressType.IPV4


def slice_changed(existing: EndpointSlice, desired: EndpointSlice) -> bool:
    """
    Compare the published content of two EndpointSlices.

    Args:
        existing: Slice currently stored
        desired: Freshly built slice

    Returns:
        True if labels, address type, endpoints or ports differ
    """
    return (
        existing.metadata.labels != desired.metadata.labels
        or existing.address_type != desired.address_type
        or existing.endpoints != desired.endpoints
        or existing.ports != desired.ports
    )
