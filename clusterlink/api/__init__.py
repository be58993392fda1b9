"""
Resource types for service export, import and endpoint publication.
"""

from clusterlink.api.types import (
    AddressType,
    ClusterStatus,
    Condition,
    ConditionStatus,
    Endpoint,
    EndpointAddress,
    Endpoints,
    EndpointSlice,
    EndpointSubset,
    ObjectMeta,
    Service,
    ServiceExport,
    ServiceImport,
    ServiceImportType,
    ServicePort,
    ServiceType,
)

__all__ = [
    "AddressType",
    "ClusterStatus",
    "Condition",
    "ConditionStatus",
    "Endpoint",
    "EndpointAddress",
    "Endpoints",
    "EndpointSlice",
    "EndpointSubset",
    "ObjectMeta",
    "Service",
    "ServiceExport",
    "ServiceImport",
    "ServiceImportType",
    "ServicePort",
    "ServiceType",
]
