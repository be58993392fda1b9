"""Tests for broker synchronization."""

import pytest

from clusterlink.api.types import (
    ClusterStatus,
    Endpoint,
    EndpointSlice,
    ObjectMeta,
    ServiceImport,
)
from clusterlink.controller.endpoints import endpoint_slice_labels
from clusterlink.store.base import StoreUnavailableError
from clusterlink.store.memory import MemoryStore
from clusterlink.syncer.propagator import SyncPropagator, is_managed
from clusterlink.utils.retry import RetryConfig


def make_slice(cluster_id, name="svc", namespace="default", ready=True, labels=None):
    return EndpointSlice(
        metadata=ObjectMeta(
            name=f"{name}-{cluster_id}",
            namespace=namespace,
            labels=labels if labels is not None else endpoint_slice_labels(namespace, name, cluster_id),
        ),
        endpoints=[Endpoint(addresses=["10.0.0.5"], ready=ready)],
    )


def make_import(clusters, name="svc", namespace="default"):
    return ServiceImport(
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            labels={"endpointslice.kubernetes.io/managed-by": "clusterlink-agent"},
        ),
        clusters=[ClusterStatus(cluster=c) for c in clusters],
    )


def fast_retries():
    return RetryConfig(max_retries=3, retry_backoff_ms=1, retry_backoff_max_ms=5, retry_jitter_ms=0)


def exists(store, kind, name, namespace="default"):
    async def _exists():
        return await store.get(kind, namespace, name) is not None

    return _exists


def absent(store, kind, name, namespace="default"):
    async def _absent():
        return await store.get(kind, namespace, name) is None

    return _absent


class TestIsManaged:
    """Test the ownership predicate."""

    def test_managed(self):
        assert is_managed(make_slice("cluster1"))

    def test_foreign_manager(self):
        labels = endpoint_slice_labels("default", "svc", "cluster1")
        labels["endpointslice.kubernetes.io/managed-by"] = "other"

        assert not is_managed(make_slice("cluster1", labels=labels))

    def test_unlabelled(self):
        assert not is_managed(make_slice("cluster1", labels={}))


class TestSyncPropagator:
    """Test propagation between two clusters through the broker."""

    @pytest.fixture
    async def propagators(self, cluster1, cluster2, broker):
        propagators = [
            SyncPropagator("cluster1", cluster1, broker, retry_config=fast_retries()),
            SyncPropagator("cluster2", cluster2, broker, retry_config=fast_retries()),
        ]
        for propagator in propagators:
            await propagator.start()
        yield propagators
        for propagator in propagators:
            await propagator.stop()

    @pytest.mark.asyncio
    async def test_slice_reaches_other_cluster(self, propagators, cluster1, cluster2, broker, eventually):
        """Test a published slice is mirrored to the broker and imported elsewhere."""
        await cluster1.create(make_slice("cluster1"))

        await eventually(exists(broker, EndpointSlice.KIND, "svc-cluster1"))
        await eventually(exists(cluster2, EndpointSlice.KIND, "svc-cluster1"))

        imported = await cluster2.get(EndpointSlice.KIND, "default", "svc-cluster1")
        assert imported.metadata.labels["multicluster.kubernetes.io/source-cluster"] == "cluster1"
        assert imported.metadata.labels["clusterlink.io/source-namespace"] == "default"
        assert imported.endpoints == [Endpoint(addresses=["10.0.0.5"], ready=True)]

    @pytest.mark.asyncio
    async def test_slice_update_propagates(self, propagators, cluster1, cluster2, broker, eventually):
        """Test readiness changes reach importing clusters."""
        created = await cluster1.create(make_slice("cluster1"))
        await eventually(exists(cluster2, EndpointSlice.KIND, "svc-cluster1"))

        updated = make_slice("cluster1", ready=False)
        updated.metadata.resource_version = created.metadata.resource_version
        await cluster1.update(updated)

        async def not_ready():
            imported = await cluster2.get(EndpointSlice.KIND, "default", "svc-cluster1")
            return imported is not None and not imported.endpoints[0].ready

        await eventually(not_ready)

    @pytest.mark.asyncio
    async def test_slice_deletion_propagates(self, propagators, cluster1, cluster2, broker, eventually):
        await cluster1.create(make_slice("cluster1"))
        await eventually(exists(cluster2, EndpointSlice.KIND, "svc-cluster1"))

        await cluster1.delete(EndpointSlice.KIND, "default", "svc-cluster1")

        await eventually(absent(broker, EndpointSlice.KIND, "svc-cluster1"))
        await eventually(absent(cluster2, EndpointSlice.KIND, "svc-cluster1"))

    @pytest.mark.asyncio
    async def test_unmanaged_slice_never_pushed(self, propagators, cluster1, broker, eventually):
        """Test a slice managed by someone else stays local."""
        labels = endpoint_slice_labels("default", "other", "cluster1")
        labels["endpointslice.kubernetes.io/managed-by"] = "other"
        await cluster1.create(make_slice("cluster1", name="other", labels=labels))

        await cluster1.create(make_slice("cluster1"))
        await eventually(exists(broker, EndpointSlice.KIND, "svc-cluster1"))
        await eventually(propagators[0].is_idle)

        assert await broker.get(EndpointSlice.KIND, "default", "other-cluster1") is None

    @pytest.mark.asyncio
    async def test_own_slice_not_imported_back(self, propagators, cluster1, cluster2, broker, eventually):
        """Test the source cluster keeps its own slice untouched."""
        created = await cluster1.create(make_slice("cluster1"))
        await eventually(exists(cluster2, EndpointSlice.KIND, "svc-cluster1"))
        await eventually(lambda: all(p.is_idle() for p in propagators))

        own = await cluster1.get(EndpointSlice.KIND, "default", "svc-cluster1")
        assert own.metadata.resource_version == created.metadata.resource_version

    @pytest.mark.asyncio
    async def test_foreign_object_not_overwritten(self, propagators, cluster1, cluster2, broker, eventually):
        """Test an unmanaged object with a colliding name is left alone."""
        await cluster2.create(make_slice("cluster1", labels={"app": "manual"}))

        await cluster1.create(make_slice("cluster1", ready=False))
        await eventually(exists(broker, EndpointSlice.KIND, "svc-cluster1"))
        await eventually(lambda: all(p.is_idle() for p in propagators))

        manual = await cluster2.get(EndpointSlice.KIND, "default", "svc-cluster1")
        assert manual.metadata.labels == {"app": "manual"}
        assert manual.endpoints[0].ready

    @pytest.mark.asyncio
    async def test_service_import_materialized(self, propagators, cluster1, cluster2, broker, eventually):
        """Test broker ServiceImports are copied into every cluster."""
        await broker.create(make_import(["cluster1"]))

        await eventually(exists(cluster1, ServiceImport.KIND, "svc"))
        await eventually(exists(cluster2, ServiceImport.KIND, "svc"))

        local = await cluster2.get(ServiceImport.KIND, "default", "svc")
        assert local.cluster_ids() == ["cluster1"]

        await broker.delete(ServiceImport.KIND, "default", "svc")

        await eventually(absent(cluster1, ServiceImport.KIND, "svc"))
        await eventually(absent(cluster2, ServiceImport.KIND, "svc"))

    @pytest.mark.asyncio
    async def test_unmanaged_service_import_ignored(self, propagators, cluster1, broker, eventually):
        service_import = make_import(["cluster1"])
        service_import.metadata.labels = {}
        await broker.create(service_import)

        await eventually(propagators[0].is_idle)

        assert await cluster1.get(ServiceImport.KIND, "default", "svc") is None

    @pytest.mark.asyncio
    async def test_broker_outage_retried(self, propagators, cluster1, broker, eventually):
        """Test a slice published during an outage arrives once the broker is back."""
        broker.set_available(False)

        await cluster1.create(make_slice("cluster1"))
        key = (EndpointSlice.KIND, "default", "svc-cluster1")
        await eventually(lambda: propagators[0].to_broker.num_requeues(key) > 0)

        broker.set_available(True)

        await eventually(exists(broker, EndpointSlice.KIND, "svc-cluster1"))


class TestSyncPropagatorResync:
    """Test startup relisting."""

    @pytest.mark.asyncio
    async def test_existing_objects_synced_on_start(self, cluster1, broker, eventually):
        """Test objects created before start are synced."""
        await broker.create(make_slice("cluster2"))
        await broker.create(make_import(["cluster2"]))
        await cluster1.create(make_slice("cluster1"))

        propagator = SyncPropagator("cluster1", cluster1, broker, retry_config=fast_retries())
        await propagator.start()
        try:
            await eventually(exists(cluster1, EndpointSlice.KIND, "svc-cluster2"))
            await eventually(exists(cluster1, ServiceImport.KIND, "svc"))
            await eventually(exists(broker, EndpointSlice.KIND, "svc-cluster1"))
        finally:
            await propagator.stop()

    @pytest.mark.asyncio
    async def test_stale_import_removed_on_start(self, cluster1, broker, eventually):
        """Test a local copy whose broker source vanished is deleted."""
        await cluster1.create(make_slice("cluster2"))
        await cluster1.create(make_import(["cluster2"]))

        propagator = SyncPropagator("cluster1", cluster1, broker, retry_config=fast_retries())
        await propagator.start()
        try:
            await eventually(absent(cluster1, EndpointSlice.KIND, "svc-cluster2"))
            await eventually(absent(cluster1, ServiceImport.KIND, "svc"))
        finally:
            await propagator.stop()


class SliceRejectingStore(MemoryStore):
    """Broker that refuses EndpointSlice writes while rejecting is on."""

    def __init__(self, name):
        super().__init__(name)
        self.rejecting = True

    async def create(self, obj):
        if self.rejecting and type(obj).KIND == EndpointSlice.KIND:
            raise StoreUnavailableError("endpoint slices rejected")
        return await super().create(obj)


class TestPublishOutcome:
    """Test reporting of publishing to the broker."""

    @pytest.fixture
    def rejecting_broker(self):
        return SliceRejectingStore("broker")

    @pytest.fixture
    def outcomes(self):
        return {"failed": [], "published": []}

    @pytest.fixture
    async def propagator(self, cluster1, rejecting_broker, outcomes):
        propagator = SyncPropagator("cluster1", cluster1, rejecting_broker, retry_config=fast_retries())
        propagator.publish_failed_callback = lambda *args: outcomes["failed"].append(args)
        propagator.published_callback = lambda *args: outcomes["published"].append(args)
        await propagator.start()
        yield propagator
        await propagator.stop()

    @pytest.mark.asyncio
    async def test_failure_reported_after_retries(self, propagator, cluster1, rejecting_broker, outcomes, eventually):
        """Test a slice the broker keeps rejecting is dropped and reported."""
        await cluster1.create(make_slice("cluster1"))

        await eventually(lambda: outcomes["failed"])
        await eventually(propagator.is_idle)

        key = (EndpointSlice.KIND, "default", "svc-cluster1")
        assert propagator.to_broker.num_requeues(key) == 0
        assert outcomes["failed"][0][:2] == ("default", "svc")
        assert "endpoint slices rejected" in outcomes["failed"][0][2]
        assert await rejecting_broker.list(EndpointSlice.KIND) == []

    @pytest.mark.asyncio
    async def test_success_reported_after_recovery(self, propagator, cluster1, rejecting_broker, outcomes, eventually):
        await cluster1.create(make_slice("cluster1"))
        await eventually(lambda: outcomes["failed"])

        rejecting_broker.rejecting = False
        await propagator.resync()

        await eventually(exists(rejecting_broker, EndpointSlice.KIND, "svc-cluster1"))
        await eventually(lambda: ("default", "svc") in outcomes["published"])
