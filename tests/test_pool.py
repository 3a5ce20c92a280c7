"""
PoolManager tests - provisioning, scaling, assignment, retirement.
"""

import threading

import pytest

from mcp_server_fleet.runtime.config import FleetSettings
from mcp_server_fleet.runtime.errors import (
    InsufficientCapacity,
    InvalidPoolSize,
    NotFound,
    PoolExhausted,
    TemplateNotFound,
)
from mcp_server_fleet.runtime.models import AgentStatus, PoolConfig
from mcp_server_fleet.runtime.pool import PoolManager


def assert_invariants(pool):
    """available ∩ busy = ∅ and |available| + |busy| = current_size."""
    assert not set(pool.available_agents) & set(pool.busy_agents)
    assert len(pool.available_agents) + len(pool.busy_agents) == pool.current_size
    assert len(set(pool.available_agents)) == len(pool.available_agents)


class TestCreatePool:
    def test_provisions_min_size(self, pools, registry):
        pool_id = pools.create_pool("r1", "researcher", PoolConfig(min_size=2, max_size=5, auto_scale=True))
        pool = pools.get_pool(pool_id)

        assert pool_id.startswith("pool-")
        assert pool.current_size == 2
        assert len(pool.available_agents) == 2
        assert pool.busy_agents == []
        assert pool.template == "researcher"
        assert_invariants(pool)
        for agent_id in pool.available_agents:
            assert registry.get_agent(agent_id).status == AgentStatus.IDLE

    def test_unknown_template(self, pools, registry):
        with pytest.raises(TemplateNotFound):
            pools.create_pool("x", "bogus-template", PoolConfig(min_size=2, max_size=3))
        assert len(registry) == 0
        assert pools.get_all_pools() == []

    def test_min_above_max(self, pools, registry):
        with pytest.raises(InvalidPoolSize):
            pools.create_pool("x", "researcher", PoolConfig(min_size=4, max_size=2))
        assert len(registry) == 0

    def test_empty_pool(self, pools):
        pool = pools.get_pool(pools.create_pool("lazy", "analyst", PoolConfig(min_size=0, max_size=2)))
        assert pool.current_size == 0

    def test_unknown_pool(self, pools):
        with pytest.raises(NotFound):
            pools.get_pool("pool-missing")


class TestAssignment:
    """Scenario r1 and FIFO assignment."""

    def test_r1_scenario_auto_scale_grows(self, pools):
        pool_id = pools.create_pool("r1", "researcher", PoolConfig(min_size=2, max_size=5, auto_scale=True))

        pools.assign_agent(pool_id)
        pools.assign_agent(pool_id)
        pool = pools.get_pool(pool_id)
        assert len(pool.busy_agents) == 2
        assert pool.available_agents == []

        third = pools.assign_agent(pool_id)
        pool = pools.get_pool(pool_id)
        assert pool.current_size == 3
        assert third.id in pool.busy_agents
        assert_invariants(pool)

    def test_r1_scenario_without_auto_scale_is_exhausted(self, pools):
        pool_id = pools.create_pool("r1", "researcher", PoolConfig(min_size=2, max_size=5))
        pools.assign_agent(pool_id)
        pools.assign_agent(pool_id)

        with pytest.raises(PoolExhausted):
            pools.assign_agent(pool_id)
        assert pools.get_pool(pool_id).current_size == 2

    def test_auto_scale_stops_at_max(self, pools):
        pool_id = pools.create_pool("small", "researcher", PoolConfig(min_size=1, max_size=2, auto_scale=True))
        pools.assign_agent(pool_id)
        pools.assign_agent(pool_id)
        with pytest.raises(PoolExhausted):
            pools.assign_agent(pool_id)

    def test_fifo_order(self, pools):
        pool_id = pools.create_pool("fifo", "analyst", PoolConfig(min_size=3, max_size=3))
        order = pools.get_pool(pool_id).available_agents

        first = pools.assign_agent(pool_id).id
        assert first == order[0]
        pools.release_agent(pool_id, first)
        assert pools.get_pool(pool_id).available_agents == order[1:] + [first]

    def test_concurrent_assignments_are_distinct(self, pools):
        pool_id = pools.create_pool("race", "analyst", PoolConfig(min_size=5, max_size=5))
        assigned = []
        lock = threading.Lock()

        def take():
            agent_id = pools.assign_agent(pool_id).id
            with lock:
                assigned.append(agent_id)

        threads = [threading.Thread(target=take) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(assigned)) == 5
        with pytest.raises(PoolExhausted):
            pools.assign_agent(pool_id)
        assert_invariants(pools.get_pool(pool_id))

    def test_inactive_member_is_skipped(self, pools, registry):
        pool_id = pools.create_pool("skip", "analyst", PoolConfig(min_size=2, max_size=2))
        stale, fresh = pools.get_pool(pool_id).available_agents
        registry.stop_agent(stale, force=True)

        assert pools.assign_agent(pool_id).id == fresh
        assert registry.get_agent(stale) is None
        pool = pools.get_pool(pool_id)
        # replaced to keep min_size
        assert pool.current_size == 2
        assert_invariants(pool)


class TestRelease:
    def test_release_unknown_agent(self, pools):
        pool_id = pools.create_pool("p", "analyst", PoolConfig(min_size=1, max_size=2))
        with pytest.raises(NotFound):
            pools.release_agent(pool_id, "agent-nope")

    def test_unhealthy_agent_is_retired_and_replaced(self, pools, registry):
        pool_id = pools.create_pool("p", "analyst", PoolConfig(min_size=2, max_size=3))
        agent_id = pools.assign_agent(pool_id).id
        registry.record_health(agent_id, 0.1)

        assert pools.release_agent(pool_id, agent_id) is True

        pool = pools.get_pool(pool_id)
        assert agent_id not in pool.available_agents + pool.busy_agents
        assert registry.get_agent(agent_id) is None
        assert pool.current_size == 2
        assert_invariants(pool)

    def test_retirement_without_replacement(self, registry, fast_settings):
        manager = PoolManager(registry, fast_settings.model_copy(update={"replace_retired": False}))
        pool_id = manager.create_pool("p", "analyst", PoolConfig(min_size=2, max_size=3))
        agent_id = manager.assign_agent(pool_id).id
        registry.report_fault(agent_id, "crashed")

        assert manager.release_agent(pool_id, agent_id) is True
        assert manager.get_pool(pool_id).current_size == 1

    def test_healthy_agent_returns_to_pool(self, pools, registry):
        pool_id = pools.create_pool("p", "analyst", PoolConfig(min_size=1, max_size=1))
        agent_id = pools.assign_agent(pool_id).id
        registry.record_health(agent_id, 0.5)

        assert pools.release_agent(pool_id, agent_id) is False
        assert pools.get_pool(pool_id).available_agents == [agent_id]


class TestScaling:
    """Manual and automatic resizing."""

    def test_scale_up(self, pools):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=1, max_size=5))
        pool = pools.scale_pool(pool_id, 4)
        assert pool.current_size == 4
        assert len(pool.available_agents) == 4
        assert_invariants(pool)

    def test_scale_down_prefers_idle(self, pools, registry):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=1, max_size=5))
        pools.scale_pool(pool_id, 4)
        busy = pools.assign_agent(pool_id).id

        pool = pools.scale_pool(pool_id, 2)

        assert pool.current_size == 2
        assert pool.busy_agents == [busy]
        assert_invariants(pool)
        assert len(registry) == 2

    def test_scale_outside_bounds(self, pools):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=2, max_size=4))
        with pytest.raises(InvalidPoolSize):
            pools.scale_pool(pool_id, 5)
        with pytest.raises(InvalidPoolSize):
            pools.scale_pool(pool_id, 1)
        assert pools.get_pool(pool_id).current_size == 2

    def test_scale_below_busy_requires_force(self, pools):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=0, max_size=4))
        pools.scale_pool(pool_id, 3)
        for _ in range(3):
            pools.assign_agent(pool_id)

        with pytest.raises(InsufficientCapacity):
            pools.scale_pool(pool_id, 1)
        pool = pools.get_pool(pool_id)
        assert pool.current_size == 3
        assert len(pool.busy_agents) == 3

        pool = pools.scale_pool(pool_id, 1, force=True)
        assert pool.current_size == 1
        assert_invariants(pool)

    def test_scale_below_busy_checked_before_min_bound(self, pools):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=2, max_size=5))
        pools.scale_pool(pool_id, 3)
        for _ in range(3):
            pools.assign_agent(pool_id)

        with pytest.raises(InsufficientCapacity):
            pools.scale_pool(pool_id, 1)
        assert pools.get_pool(pool_id).current_size == 3

    def test_victim_already_terminating_is_removed(self, pools, registry, wait_until):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=0, max_size=1))
        pools.scale_pool(pool_id, 1)
        agent_id = pools.assign_agent(pool_id).id
        registry.begin_task(agent_id)

        stopper = threading.Thread(target=lambda: registry.stop_agent(agent_id, drain_timeout=0.5))
        stopper.start()
        assert wait_until(lambda: registry.get_agent(agent_id).status == AgentStatus.TERMINATING)

        pool = pools.scale_pool(pool_id, 0, force=True)
        stopper.join()

        assert pool.current_size == 0
        assert registry.get_agent(agent_id) is None

    def test_autoscale_grows_when_saturated(self, pools):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=2, max_size=4, auto_scale=True))
        pools.assign_agent(pool_id)
        pools.assign_agent(pool_id)

        assert pools.autoscale_once(pool_id) == 1
        assert pools.get_pool(pool_id).current_size == 3

    def test_autoscale_shrinks_when_idle(self, pools):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=1, max_size=4, auto_scale=True))
        pools.scale_pool(pool_id, 3)

        assert pools.autoscale_once(pool_id) == -1
        assert pools.get_pool(pool_id).current_size == 2

    def test_autoscale_holds_between_marks(self, pools):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=2, max_size=4, auto_scale=True))
        pools.assign_agent(pool_id)
        # utilization 0.5 sits between 0.3 and 0.8
        assert pools.autoscale_once(pool_id) == 0

    def test_autoscale_respects_min(self, pools):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=2, max_size=4, auto_scale=True))
        assert pools.autoscale_once(pool_id) == 0
        assert pools.get_pool(pool_id).current_size == 2

    def test_empty_pool_does_not_oscillate(self, pools, registry):
        pool_id = pools.create_pool("z", "researcher", PoolConfig(min_size=0, max_size=5, auto_scale=True))

        assert [pools.autoscale_once(pool_id) for _ in range(4)] == [0, 0, 0, 0]
        assert pools.get_pool(pool_id).current_size == 0
        assert len(registry) == 0

    def test_background_scaler(self, registry, fast_settings, wait_until):
        settings = fast_settings.model_copy(update={"autoscale_interval": 0.05})
        manager = PoolManager(registry, settings)
        manager.start()
        try:
            pool_id = manager.create_pool("bg", "researcher", PoolConfig(min_size=1, max_size=3, auto_scale=True))
            manager.assign_agent(pool_id)
            assert wait_until(lambda: manager.get_pool(pool_id).current_size >= 2)
        finally:
            manager.stop()

    def test_hysteresis_must_be_ordered(self):
        with pytest.raises(ValueError):
            FleetSettings(scale_up_threshold=0.3, scale_down_threshold=0.5)


class TestDisband:
    def test_disband_removes_members(self, pools, registry):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=3, max_size=3))
        pools.assign_agent(pool_id)

        removed = pools.disband_pool(pool_id)

        assert len(removed) == 3
        assert len(registry) == 0
        assert pools.get_all_pools() == []
        with pytest.raises(NotFound):
            pools.get_pool(pool_id)

    def test_evict(self, pools, registry):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=2, max_size=2))
        agent_id = pools.get_pool(pool_id).available_agents[0]

        assert pools.pool_of(agent_id) == pool_id
        assert pools.evict(agent_id) == pool_id
        assert pools.pool_of(agent_id) is None
        assert_invariants(pools.get_pool(pool_id))


class TestAdopt:
    """Existing agents joining a pool."""

    def test_adopt_appends_to_available(self, pools, registry, started_agent):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=1, max_size=3))

        pool = pools.adopt(pool_id, started_agent)

        assert pool.available_agents[-1] == started_agent
        assert pool.current_size == 2
        assert pools.pool_of(started_agent) == pool_id
        assert_invariants(pool)

    def test_adopt_rejects_full_pool(self, pools, started_agent):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=1, max_size=1))
        with pytest.raises(InvalidPoolSize):
            pools.adopt(pool_id, started_agent)
        assert pools.pool_of(started_agent) is None

    def test_adopt_rejects_wrong_type(self, pools, registry):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=0, max_size=3))
        analyst = registry.create_agent("analyst").id
        registry.start_agent(analyst)
        with pytest.raises(ValueError):
            pools.adopt(pool_id, analyst)

    def test_adopt_requires_running_agent(self, pools, registry):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=0, max_size=3))
        agent_id = registry.create_agent("researcher").id
        with pytest.raises(ValueError):
            pools.adopt(pool_id, agent_id)

    def test_adopt_twice(self, pools, started_agent):
        pool_id = pools.create_pool("p", "researcher", PoolConfig(min_size=0, max_size=3))
        pools.adopt(pool_id, started_agent)
        with pytest.raises(ValueError):
            pools.adopt(pool_id, started_agent)

    def test_resolve_by_id_or_name(self, pools):
        pool_id = pools.create_pool("workers", "researcher", PoolConfig(min_size=0, max_size=3))
        assert pools.resolve(pool_id) == pool_id
        assert pools.resolve("workers") == pool_id
        with pytest.raises(NotFound):
            pools.resolve("nobody")
