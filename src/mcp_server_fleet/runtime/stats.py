"""Read-side roll-up of registry, health and pool state."""

from collections import Counter
from typing import List, Optional

from .models import ACTIVE_STATUSES, Agent, AgentPool, ResourceUtilization, SystemStats
from .pool import PoolManager
from .registry import AgentRegistry


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class StatsAggregator:
    def __init__(self, registry: AgentRegistry, pools: Optional[PoolManager] = None,
                 healthy_threshold: float = 0.7):
        self.registry = registry
        self.pools = pools
        self.healthy_threshold = healthy_threshold

    def get_system_stats(self) -> SystemStats:
        agents = self.registry.get_all_agents()
        pools = self.pools.get_all_pools() if self.pools else []
        return summarize(agents, pools, self.healthy_threshold)


def summarize(agents: List[Agent], pools: List[AgentPool], healthy_threshold: float = 0.7) -> SystemStats:
    """Aggregate snapshots into a SystemStats record."""
    active = [a for a in agents if a.status in ACTIVE_STATUSES]
    utilization = ResourceUtilization(
        cpu=_mean([a.metrics.cpu_usage for a in active]),
        memory=_mean([a.metrics.memory_usage / a.environment.max_memory_usage for a in active]),
        disk=_mean([a.metrics.disk_usage for a in active]),
    )
    return SystemStats(
        total_agents=len(agents),
        active_agents=len(active),
        healthy_agents=sum(1 for a in agents if a.health >= healthy_threshold),
        average_health=_mean([a.health for a in agents]) if agents else 1.0,
        pools=len(pools),
        resource_utilization=utilization,
        by_status=dict(Counter(a.status.value for a in agents)),
        by_type=dict(Counter(a.type.value for a in agents)),
        total_workload=sum(a.workload for a in agents),
        total_restarts=sum(a.restart_count for a in agents),
        pool_utilization={p.id: p.utilization for p in pools},
    )
