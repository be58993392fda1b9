#!/usr/bin/env python3
"""
Two-cluster demo of clusterlink.

Exports a service from cluster "east", shows it imported in cluster "west",
then withdraws it.
"""

import asyncio
import json

from clusterlink.agent import ClusterAgent
from clusterlink.api.types import (
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
from clusterlink.store.memory import MemoryStore
from clusterlink.utils.config import AgentConfig
from clusterlink.utils.logging import configure_logging


async def wait_for(check, timeout=5.0):
    """Poll an async check until it returns a truthy value."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        result = await check()
        if result:
            return result
        await asyncio.sleep(0.05)
    return None


async def main():
    configure_logging(log_level="WARNING", log_format="console")

    print("=" * 60)
    print("clusterlink - Two Cluster Export Demo")
    print("=" * 60)

    broker = MemoryStore("broker")
    east = MemoryStore("east")
    west = MemoryStore("west")

    print("\n[1] Starting agents...")
    agents = [
        ClusterAgent(AgentConfig(cluster_id="east", resync_period_seconds=0), east, broker),
        ClusterAgent(AgentConfig(cluster_id="west", resync_period_seconds=0), west, broker),
    ]
    for agent in agents:
        await agent.start()
    print("✅ Agents started for 'east' and 'west'")

    print("\n[2] Exporting default/web from 'east'...")
    await east.create(
        Service(
            metadata=ObjectMeta(name="web", namespace="default"),
            cluster_ip="10.0.0.5",
            ports=[ServicePort(port=80, name="http")],
        )
    )
    await east.create(
        Endpoints(
            metadata=ObjectMeta(name="web", namespace="default"),
            subsets=[EndpointSubset(addresses=[EndpointAddress(ip="10.1.0.7")])],
        )
    )
    await east.create(ServiceExport(metadata=ObjectMeta(name="web", namespace="default")))

    async def imported():
        return await west.get(EndpointSlice.KIND, "default", "web-east")

    endpoint_slice = await wait_for(imported)
    if endpoint_slice is None:
        print("❌ EndpointSlice never reached 'west'")
        return

    service_import = await west.get(ServiceImport.KIND, "default", "web")
    print("✅ 'west' imported the service")
    print(f"  ServiceImport: {json.dumps(service_import.to_dict(), indent=2)}")
    print(f"  EndpointSlice: {json.dumps(endpoint_slice.to_dict(), indent=2)}")

    export = await east.get(ServiceExport.KIND, "default", "web")
    for condition in export.conditions:
        print(f"  {condition.type}={condition.status.value} {condition.reason}")

    print("\n[3] Withdrawing the export...")
    await east.delete(ServiceExport.KIND, "default", "web")

    async def withdrawn():
        return await west.get(ServiceImport.KIND, "default", "web") is None

    if await wait_for(withdrawn):
        print("✅ ServiceImport removed from 'west'")
    else:
        print("❌ ServiceImport still present in 'west'")

    for agent in agents:
        await agent.stop()

    print("\n" + "=" * 60)
    print("Demo complete")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
