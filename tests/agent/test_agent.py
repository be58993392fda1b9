"""End-to-end tests for cluster agents sharing a broker."""

import pytest

from clusterlink.agent.agent import ClusterAgent
from clusterlink.api.types import (
    ConditionStatus,
    EndpointAddress,
    Endpoints,
    EndpointSlice,
    EndpointSubset,
    ObjectMeta,
    Service,
    ServiceExport,
    ServiceImport,
    ServicePort,
)
from clusterlink.store.base import StoreUnavailableError
from clusterlink.store.memory import MemoryStore
from clusterlink.utils.config import Config


def make_service(cluster_ip="10.0.0.5"):
    return Service(
        metadata=ObjectMeta(name="svc", namespace="default"),
        cluster_ip=cluster_ip,
        ports=[ServicePort(port=80, name="http")],
    )


def make_endpoints(ip="10.1.0.1"):
    return Endpoints(
        metadata=ObjectMeta(name="svc", namespace="default"),
        subsets=[EndpointSubset(addresses=[EndpointAddress(ip=ip)])],
    )


async def export_service(store, cluster_ip="10.0.0.5"):
    await store.create(make_service(cluster_ip))
    await store.create(make_endpoints())
    await store.create(ServiceExport(metadata=ObjectMeta(name="svc", namespace="default")))


def local_import(store, clusters):
    async def _matches():
        service_import = await store.get(ServiceImport.KIND, "default", "svc")
        if not clusters:
            return service_import is None
        return service_import is not None and service_import.cluster_ids() == clusters

    return _matches


def local_slice(store, name, present=True):
    async def _matches():
        return (await store.get(EndpointSlice.KIND, "default", name) is not None) == present

    return _matches


class TestClusterAgent:
    """Test two agents exchanging services through the broker."""

    @pytest.fixture
    async def agents(self, cluster1, cluster2, broker, agent_config):
        agents = [
            ClusterAgent(agent_config("cluster1"), cluster1, broker),
            ClusterAgent(agent_config("cluster2"), cluster2, broker),
        ]
        for agent in agents:
            await agent.start()
        yield agents
        for agent in agents:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_export_visible_in_other_cluster(self, agents, cluster1, cluster2, broker, eventually):
        """Test an export in one cluster is imported by the other."""
        await export_service(cluster1)

        await eventually(local_import(cluster2, ["cluster1"]))
        await eventually(local_slice(cluster2, "svc-cluster1"))

        broker_import = await broker.get(ServiceImport.KIND, "default", "svc")
        data = broker_import.to_dict()
        assert data["namespace"] == "default"
        assert data["name"] == "svc"
        assert data["type"] == "ClusterSetIP"
        assert [c["cluster"] for c in data["clusters"]] == ["cluster1"]

        imported = await cluster2.get(EndpointSlice.KIND, "default", "svc-cluster1")
        assert [e.to_dict() for e in imported.endpoints] == [{"addresses": ["10.0.0.5"], "ready": True}]

    @pytest.mark.asyncio
    async def test_both_clusters_export(self, agents, cluster1, cluster2, broker, eventually):
        """Test every cluster sees every contribution."""
        await export_service(cluster1, "10.0.0.5")
        await export_service(cluster2, "10.0.1.5")

        for store in (cluster1, cluster2):
            await eventually(local_import(store, ["cluster1", "cluster2"]))

        await eventually(local_slice(cluster1, "svc-cluster2"))
        await eventually(local_slice(cluster2, "svc-cluster1"))

    @pytest.mark.asyncio
    async def test_unexport_removes_remote_artifacts(self, agents, cluster1, cluster2, broker, eventually):
        """Test withdrawing the sole export clears the importing cluster."""
        await export_service(cluster1)
        await eventually(local_slice(cluster2, "svc-cluster1"))

        await cluster1.delete(ServiceExport.KIND, "default", "svc")

        await eventually(local_import(cluster2, []))
        await eventually(local_slice(cluster2, "svc-cluster1", present=False))
        await eventually(local_slice(cluster1, "svc-cluster1", present=False))

    @pytest.mark.asyncio
    async def test_withdraw_one_of_two(self, agents, cluster1, cluster2, broker, eventually):
        await export_service(cluster1, "10.0.0.5")
        await export_service(cluster2, "10.0.1.5")
        await eventually(local_import(cluster1, ["cluster1", "cluster2"]))

        await cluster2.delete(Service.KIND, "default", "svc")

        await eventually(local_import(cluster1, ["cluster1"]))
        await eventually(local_slice(cluster1, "svc-cluster2", present=False))

    @pytest.mark.asyncio
    async def test_resync_is_quiet_when_converged(self, agents, cluster1, cluster2, broker, eventually):
        await export_service(cluster1)
        await eventually(local_slice(cluster2, "svc-cluster1"))
        await eventually(lambda: all(agent.is_idle() for agent in agents))

        writes = len(cluster1.status_history)
        for agent in agents:
            await agent.resync()
        await eventually(lambda: all(agent.is_idle() for agent in agents))

        assert len(cluster1.status_history) == writes


class TestClusterAgentLifecycle:
    """Test agent construction and lifecycle."""

    def test_from_config(self, cluster1, broker, monkeypatch):
        monkeypatch.delenv("CLUSTER_ID", raising=False)

        agent = ClusterAgent.from_config(Config(), cluster1, broker, cluster_id="east")

        assert agent.cluster_id == "east"
        assert agent.controller.cluster_id == "east"
        assert agent.propagator.cluster_id == "east"

    @pytest.mark.asyncio
    async def test_start_stop_idempotent(self, cluster1, broker, agent_config):
        agent = ClusterAgent(agent_config("cluster1"), cluster1, broker)

        await agent.start()
        await agent.start()
        assert agent.is_running

        await agent.stop()
        await agent.stop()
        assert not agent.is_running


class SliceRejectingStore(MemoryStore):
    """Broker that refuses EndpointSlice writes while rejecting is on."""

    def __init__(self, name):
        super().__init__(name)
        self.rejecting = True

    async def create(self, obj):
        if self.rejecting and type(obj).KIND == EndpointSlice.KIND:
            raise StoreUnavailableError("endpoint slices rejected")
        return await super().create(obj)


def synced_matcher(store, status, reason=None):
    async def _matches():
        export = await store.get(ServiceExport.KIND, "default", "svc")
        condition = export.get_condition("Synced") if export is not None else None
        if condition is None or condition.status != status:
            return False
        return reason is None or condition.reason == reason

    return _matches


class TestEndpointSlicePublishFailure:
    """Test an export whose EndpointSlice never reaches the broker."""

    @pytest.fixture
    def rejecting_broker(self):
        return SliceRejectingStore("broker")

    @pytest.fixture
    async def agent(self, cluster1, rejecting_broker, agent_config):
        agent = ClusterAgent(agent_config("cluster1", max_retries=2), cluster1, rejecting_broker)
        await agent.start()
        yield agent
        await agent.stop()

    @pytest.mark.asyncio
    async def test_export_failed_then_recovered(self, agent, cluster1, rejecting_broker, eventually):
        """Test the failed push surfaces as ExportFailed and clears once published."""
        await export_service(cluster1)

        await eventually(synced_matcher(cluster1, ConditionStatus.FALSE, "ExportFailed"))
        await eventually(agent.is_idle)

        assert await rejecting_broker.get(ServiceImport.KIND, "default", "svc") is not None
        assert await rejecting_broker.list(EndpointSlice.KIND) == []

        export = await cluster1.get(ServiceExport.KIND, "default", "svc")
        assert "endpoint slices rejected" in export.get_condition("Synced").message

        rejecting_broker.rejecting = False
        await agent.resync()

        await eventually(synced_matcher(cluster1, ConditionStatus.TRUE))
        assert await rejecting_broker.get(EndpointSlice.KIND, "default", "svc-cluster1") is not None
