import os
import time

import pytest

from mcp_server_fleet.runtime.config import FleetSettings
from mcp_server_fleet.runtime.manager import AgentManager
from mcp_server_fleet.runtime.pool import PoolManager
from mcp_server_fleet.runtime.registry import AgentRegistry
from mcp_server_fleet.runtime.store import InMemoryKeyValueStore
from mcp_server_fleet.runtime.templates import TemplateCatalog


@pytest.fixture
def temp_fleet(tmp_path):
    """Point the fleet data directory at a temporary path."""
    old = os.environ.get("FLEET_DATA_DIR")
    os.environ["FLEET_DATA_DIR"] = str(tmp_path)
    yield tmp_path
    if old:
        os.environ["FLEET_DATA_DIR"] = old
    else:
        del os.environ["FLEET_DATA_DIR"]


@pytest.fixture
def fast_settings(temp_fleet):
    """Settings with short drains and background loops slow enough not to interfere."""
    return FleetSettings(
        data_dir=temp_fleet,
        drain_timeout=2.0,
        health_interval=60.0,
        heartbeat_interval=60.0,
        autoscale_interval=60.0,
        metrics_timeout=0.5,
        store_timeout=0.5,
    )


@pytest.fixture
def registry():
    reg = AgentRegistry(TemplateCatalog(), drain_timeout=2.0)
    yield reg
    reg.shutdown()


@pytest.fixture
def started_agent(registry):
    """An idle researcher agent."""
    agent_id = registry.create_agent("researcher").id
    registry.start_agent(agent_id)
    return agent_id


@pytest.fixture
def pools(registry, fast_settings):
    manager = PoolManager(registry, fast_settings)
    yield manager
    manager.stop()


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def manager(fast_settings, store):
    """A started AgentManager backed by an in-memory archive."""
    mgr = AgentManager(fast_settings, store=store).start()
    yield mgr
    mgr.shutdown()


def _wait_until(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    """Poll a predicate until it is truthy or the timeout expires."""
    return _wait_until
