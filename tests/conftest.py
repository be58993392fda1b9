"""Shared fixtures for clusterlink tests."""

import asyncio

import pytest

from clusterlink.store.memory import MemoryStore
from clusterlink.utils.config import AgentConfig


@pytest.fixture
def eventually():
    """
    Poll a predicate until it holds.

    The predicate may be a plain function or a coroutine function.
    """
    async def _eventually(predicate, timeout=5.0, interval=0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result

            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")

            await asyncio.sleep(interval)

    return _eventually


@pytest.fixture
def agent_config():
    """Build fast-retrying agent settings for a cluster."""
    def _agent_config(cluster_id, **overrides):
        settings = dict(
            cluster_id=cluster_id,
            workers=2,
            resync_period_seconds=0,
            max_retries=3,
            retry_backoff_ms=1,
            retry_backoff_max_ms=5,
            retry_jitter_ms=0,
        )
        settings.update(overrides)
        return AgentConfig(**settings)

    return _agent_config


@pytest.fixture
def broker():
    """Create broker store."""
    return MemoryStore("broker")


@pytest.fixture
def cluster1():
    """Create store of the first member cluster."""
    return MemoryStore("cluster1")


@pytest.fixture
def cluster2():
    """Create store of the second member cluster."""
    return MemoryStore("cluster2")
