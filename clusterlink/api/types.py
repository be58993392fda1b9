"""
Resource types exchanged between member clusters and the broker.

Every resource carries an ObjectMeta whose resource_version is assigned by the
store and serves as the optimistic-concurrency token for conditional writes.
"""

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Tuple


class ConditionStatus(str, Enum):
    """Status value of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ServiceType(str, Enum):
    """Declared Service types."""

    CLUSTER_IP = "ClusterIP"
    HEADLESS = "Headless"
    NODE_PORT = "NodePort"
    LOAD_BALANCER = "LoadBalancer"
    EXTERNAL_NAME = "ExternalName"


class ServiceImportType(str, Enum):
    """Aggregation type of a ServiceImport."""

    CLUSTER_SET_IP = "ClusterSetIP"
    HEADLESS = "Headless"


class AddressType(str, Enum):
    """Address family of an EndpointSlice."""

    IPV4 = "IPv4"
    IPV6 = "IPv6"

    @classmethod
    def for_address(cls, address: str) -> "AddressType":
        """
        Determine the address family of an IP address.

        Args:
            address: IP address literal

        Returns:
            IPV6 for IPv6 literals, IPV4 otherwise
        """
        try:
            if ipaddress.ip_address(address).version == 6:
                return cls.IPV6
        except ValueError:
            pass
        return cls.IPV4


HEADLESS_CLUSTER_IP = "None"


@dataclass
class ObjectMeta:
    """
    Identity and bookkeeping shared by all resources.

    Attributes:
        name: Object name
        namespace: Object namespace
        labels: Object labels
        resource_version: Store-assigned version, 0 for unsaved objects
    """
    name: str
    namespace: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    resource_version: int = 0

    def key(self) -> Tuple[str, str]:
        """Get the (namespace, name) key."""
        return (self.namespace, self.name)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
            "resourceVersion": self.resource_version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ObjectMeta":
        """Create from dictionary."""
        return cls(
            name=data["name"],
            namespace=data.get("namespace", ""),
            labels=dict(data.get("labels") or {}),
            resource_version=data.get("resourceVersion", 0),
        )


@dataclass
class Condition:
    """
    A single status condition.

    Attributes:
        type: Condition type (Valid, Synced)
        status: True, False or Unknown
        reason: Machine-readable reason
        message: Human-readable message
        last_transition_time: Time the status value last changed (epoch seconds)
    """
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: float = 0.0

    def same_as(self, other: Optional["Condition"]) -> bool:
        """Check whether other carries the same status, reason and message."""
        return (
            other is not None
            and self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        """Create from dictionary."""
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", "Unknown")),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime", 0.0),
        )


@dataclass
class ServicePort:
    """
    A port exposed by a service.

    Attributes:
        port: Port number
        name: Port name
        protocol: TCP, UDP or SCTP
    """
    port: int
    name: str = ""
    protocol: str = "TCP"

    def sort_key(self) -> Tuple[str, str, int]:
        return (self.name, self.protocol, self.port)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {"name": self.name, "protocol": self.protocol, "port": self.port}

    @classmethod
    def from_dict(cls, data: dict) -> "ServicePort":
        """Create from dictionary."""
        return cls(
            port=data["port"],
            name=data.get("name", ""),
            protocol=data.get("protocol", "TCP"),
        )


@dataclass
class ServiceExport:
    """
    Per-cluster declaration that the same-named Service should be exported.

    Attributes:
        metadata: Object metadata
        conditions: Status conditions (Valid, Synced)
    """
    KIND: ClassVar[str] = "ServiceExport"

    metadata: ObjectMeta
    conditions: List[Condition] = field(default_factory=list)

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        """
        Get a condition by type.

        Args:
            condition_type: Condition type

        Returns:
            The condition or None
        """
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            **self.metadata.to_dict(),
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceExport":
        """Create from dictionary."""
        return cls(
            metadata=ObjectMeta.from_dict(data),
            conditions=[Condition.from_dict(c) for c in data.get("conditions", [])],
        )


@dataclass
class Service:
    """
    A cluster-local service.

    Attributes:
        metadata: Object metadata
        type: Declared service type
        cluster_ip: Cluster-assigned IP ("None" for headless services)
        ports: Exposed ports
    """
    KIND: ClassVar[str] = "Service"

    metadata: ObjectMeta
    type: ServiceType = ServiceType.CLUSTER_IP
    cluster_ip: str = ""
    ports: List[ServicePort] = field(default_factory=list)

    def effective_type(self) -> ServiceType:
        """
        Get the type the service behaves as.

        A ClusterIP service without a cluster IP ("None") is headless.

        Returns:
            Effective service type
        """
        if self.type == ServiceType.CLUSTER_IP and self.cluster_ip == HEADLESS_CLUSTER_IP:
            return ServiceType.HEADLESS
        return self.type

    def is_headless(self) -> bool:
        return self.effective_type() == ServiceType.HEADLESS

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            **self.metadata.to_dict(),
            "type": self.type.value,
            "clusterIP": self.cluster_ip,
            "ports": [p.to_dict() for p in self.ports],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Service":
        """Create from dictionary."""
        return cls(
            metadata=ObjectMeta.from_dict(data),
            type=ServiceType(data.get("type") or ServiceType.CLUSTER_IP.value),
            cluster_ip=data.get("clusterIP", ""),
            ports=[ServicePort.from_dict(p) for p in data.get("ports", [])],
        )


@dataclass
class EndpointAddress:
    """
    A backend address.

    Attributes:
        ip: Backend IP
        hostname: Optional backend hostname
    """
    ip: str
    hostname: str = ""


@dataclass
class EndpointSubset:
    """
    A group of backend addresses sharing the same ports.

    Attributes:
        addresses: Ready addresses
        not_ready_addresses: Addresses that are not ready
        ports: Ports served by the addresses
    """
    addresses: List[EndpointAddress] = field(default_factory=list)
    not_ready_addresses: List[EndpointAddress] = field(default_factory=list)
    ports: List[ServicePort] = field(default_factory=list)


@dataclass
class Endpoints:
    """
    Native backend endpoint representation of a service.

    Attributes:
        metadata: Object metadata
        subsets: Address subsets
    """
    KIND: ClassVar[str] = "Endpoints"

    metadata: ObjectMeta
    subsets: List[EndpointSubset] = field(default_factory=list)

    def backends(self) -> List[Tuple[EndpointAddress, bool]]:
        """
        Derive the ordered (address, ready) set from the subsets.

        Ready addresses come before not-ready ones within each subset and an
        address listed twice keeps its first occurrence.

        Returns:
            List of (address, ready) tuples
        """
        seen = set()
        result = []
        for subset in self.subsets:
            for ready, addresses in ((True, subset.addresses), (False, subset.not_ready_addresses)):
                for address in addresses:
                    if address.ip in seen:
                        continue
                    seen.add(address.ip)
                    result.append((address, ready))
        return result

    def has_ready_backend(self) -> bool:
        return any(ready for _, ready in self.backends())


@dataclass
class ClusterStatus:
    """
    One cluster's contribution to a ServiceImport.

    Attributes:
        cluster: Contributing cluster ID
        type: Aggregation type the cluster's service maps to
        ports: Ports the cluster's service exposes
    """
    cluster: str
    type: ServiceImportType = ServiceImportType.CLUSTER_SET_IP
    ports: List[ServicePort] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "cluster": self.cluster,
            "type": self.type.value,
            "ports": [p.to_dict() for p in self.ports],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ClusterStatus":
        """Create from dictionary."""
        return cls(
            cluster=data["cluster"],
            type=ServiceImportType(data.get("type", ServiceImportType.CLUSTER_SET_IP.value)),
            ports=[ServicePort.from_dict(p) for p in data.get("ports", [])],
        )


@dataclass
class ServiceImport:
    """
    Cross-cluster aggregated view of an exported service.

    Attributes:
        metadata: Object metadata (namespace, name)
        type: Aggregation type
        ports: Union of the contributed ports
        clusters: Per-cluster contribution records, sorted by cluster
    """
    KIND: ClassVar[str] = "ServiceImport"

    metadata: ObjectMeta
    type: ServiceImportType = ServiceImportType.CLUSTER_SET_IP
    ports: List[ServicePort] = field(default_factory=list)
    clusters: List[ClusterStatus] = field(default_factory=list)

    def cluster_ids(self) -> List[str]:
        """Get IDs of contributing clusters."""
        return [c.cluster for c in self.clusters]

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            **self.metadata.to_dict(),
            "type": self.type.value,
            "ports": [p.to_dict() for p in self.ports],
            "clusters": [c.to_dict() for c in self.clusters],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceImport":
        """Create from dictionary."""
        return cls(
            metadata=ObjectMeta.from_dict(data),
            type=ServiceImportType(data.get("type", ServiceImportType.CLUSTER_SET_IP.value)),
            ports=[ServicePort.from_dict(p) for p in data.get("ports", [])],
            clusters=[ClusterStatus.from_dict(c) for c in data.get("clusters", [])],
        )


@dataclass
class Endpoint:
    """
    A routable endpoint in an EndpointSlice.

    Attributes:
        addresses: Endpoint addresses
        ready: Whether the endpoint can receive traffic
        hostname: Optional hostname (headless services)
    """
    addresses: List[str]
    ready: bool = False
    hostname: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        data = {"addresses": list(self.addresses), "ready": self.ready}
        if self.hostname:
            data["hostname"] = self.hostname
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Endpoint":
        """Create from dictionary."""
        return cls(
            addresses=list(data.get("addresses", [])),
            ready=bool(data.get("ready", False)),
            hostname=data.get("hostname", ""),
        )


@dataclass
class EndpointSlice:
    """
    Per-cluster set of routable endpoints published for other clusters.

    Attributes:
        metadata: Object metadata
        address_type: Address family
        endpoints: Endpoints with readiness
        ports: Ports served by the endpoints
    """
    KIND: ClassVar[str] = "EndpointSlice"

    metadata: ObjectMeta
    address_type: AddressType = AddressType.IPV4
    endpoints: List[Endpoint] = field(default_factory=list)
    ports: List[ServicePort] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            **self.metadata.to_dict(),
            "addressType": self.address_type.value,
            "endpoints": [e.to_dict() for e in self.endpoints],
            "ports": [p.to_dict() for p in self.ports],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EndpointSlice":
        """Create from dictionary."""
        return cls(
            metadata=ObjectMeta.from_dict(data),
            address_type=AddressType(data.get("addressType", AddressType.IPV4.value)),
            endpoints=[Endpoint.from_dict(e) for e in data.get("endpoints", [])],
            ports=[ServicePort.from_dict(p) for p in data.get("ports", [])],
        )
