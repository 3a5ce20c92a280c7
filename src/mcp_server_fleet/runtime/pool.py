"""
PoolManager - sized, scalable groups of agents from one template.

Bookkeeping per pool (``available`` FIFO + ``busy`` set) is guarded by a
per-pool state lock. That lock is innermost: no registry call is made
while holding it. Anything that changes pool size (manual scale,
auto-scale, retirement/replacement, disband) also holds the pool's
scaling lock, so resizes never interleave.

Lock order: scaling lock → agent lock (inside the registry) → state lock.
"""

import logging
import threading
import uuid
from collections import deque
from typing import Deque, Dict, List, Optional, Set

from .config import FleetSettings
from .errors import FleetError, InsufficientCapacity, InvalidPoolSize, NotFound, PoolExhausted
from .locking import KeyedLocks
from .models import (
    ACTIVE_STATUSES,
    AgentId,
    AgentOptions,
    AgentPool,
    AgentStatus,
    AgentType,
    PoolConfig,
    now_ms,
)
from .registry import AgentRegistry

logger = logging.getLogger("fleet.pool")


class _PoolState:
    """Live pool record. Mutated only under the pool's state lock."""

    def __init__(self, pool_id: str, name: str, template: str, type: AgentType, config: PoolConfig):
        self.id = pool_id
        self.name = name
        self.template = template
        self.type = type
        self.min_size = config.min_size
        self.max_size = config.max_size
        self.auto_scale = config.auto_scale
        self.available: Deque[str] = deque()
        self.busy: Set[str] = set()
        self.created_at = now_ms()
        self.lock = threading.Lock()

    @property
    def current_size(self) -> int:
        return len(self.available) + len(self.busy)

    def can_grow(self) -> bool:
        return self.auto_scale and self.current_size < self.max_size

    def snapshot(self) -> AgentPool:
        with self.lock:
            return AgentPool(
                id=self.id,
                name=self.name,
                template=self.template,
                type=self.type,
                current_size=self.current_size,
                min_size=self.min_size,
                max_size=self.max_size,
                auto_scale=self.auto_scale,
                available_agents=list(self.available),
                busy_agents=sorted(self.busy),
                created_at=self.created_at,
            )


class _AutoScaler(threading.Thread):
    """Fixed-interval utilization check for one auto-scaling pool."""

    def __init__(self, manager: "PoolManager", pool_id: str, interval: float):
        super().__init__(name=f"fleet-autoscale-{pool_id}", daemon=True)
        self.manager = manager
        self.pool_id = pool_id
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.manager.autoscale_once(self.pool_id)
            except NotFound:
                return
            except Exception as e:
                logger.error(f"Auto-scale check for pool {self.pool_id} failed: {e}")

    def stop(self):
        self._stop_event.set()


class PoolManager:
    def __init__(self, registry: AgentRegistry, settings: Optional[FleetSettings] = None):
        self.registry = registry
        self.settings = settings or FleetSettings()
        self._pools: Dict[str, _PoolState] = {}
        self._pools_lock = threading.Lock()
        self._scaling = KeyedLocks()
        self._scalers: Dict[str, _AutoScaler] = {}
        self._running = False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pool(self, pool_id: str) -> _PoolState:
        with self._pools_lock:
            pool = self._pools.get(pool_id)
        if pool is None:
            raise NotFound(f"Pool {pool_id} not found", subject=pool_id)
        return pool

    def _provision(self, pool: _PoolState, count: int) -> List[str]:
        """Create and start ``count`` agents; on failure undo what was made and re-raise."""
        created: List[str] = []
        try:
            for _ in range(count):
                agent_id = self.registry.create_agent(
                    pool.template,
                    AgentOptions(name=f"{pool.name}-{uuid.uuid4().hex[:6]}"),
                ).id
                created.append(agent_id)
                self.registry.start_agent(agent_id)
        except FleetError:
            self._discard(created, reason="provisioning_failed", force=True)
            raise
        return created

    def _discard(self, agent_ids: List[str], reason: str, force: bool = False) -> None:
        """Stop and remove agents no longer tracked by any pool."""
        for agent_id in agent_ids:
            try:
                agent = self.registry.get_agent(agent_id)
                if agent is None:
                    continue
                # Only idle/busy/error may be stopped
                if agent.status == AgentStatus.INITIALIZING:
                    self.registry.report_fault(agent_id, f"Discarded before start ({reason})")
                elif agent.status == AgentStatus.OFFLINE:
                    self.registry.start_agent(agent_id)
                if agent.status == AgentStatus.TERMINATING:
                    # Someone else is already stopping it
                    if not self.registry.wait_terminated(agent_id, self.registry.drain_timeout + 1.0):
                        logger.error(f"Agent {agent_id} did not finish terminating; left in registry")
                        continue
                elif agent.status != AgentStatus.TERMINATED:
                    self.registry.stop_agent(agent_id, reason=reason, force=force)
                self.registry.remove_agent(agent_id)
            except FleetError as e:
                logger.error(f"Failed to discard agent {agent_id}: {e.message}")

    def _grow(self, pool: _PoolState, count: int) -> List[str]:
        """Caller holds the scaling lock."""
        with pool.lock:
            count = min(count, pool.max_size - pool.current_size)
        if count <= 0:
            return []
        new_ids = self._provision(pool, count)
        with pool.lock:
            pool.available.extend(new_ids)
        logger.info(f"📈 Pool {pool.name} grew by {len(new_ids)} → {pool.current_size}")
        return new_ids

    def _shrink(self, pool: _PoolState, count: int, force: bool = False) -> List[str]:
        """
        Detach up to ``count`` agents (idle first, busy only with ``force``)
        under the state lock, then stop and remove them outside it.
        Caller holds the scaling lock.
        """
        with pool.lock:
            busy_count = len(pool.busy)
            target = pool.current_size - count
            if target < busy_count and not force:
                raise InsufficientCapacity(
                    f"Pool {pool.name} has {busy_count} busy agents; cannot shrink to {target}",
                    subject=pool.id,
                )
            victims: List[str] = []
            while len(victims) < count and pool.available:
                victims.append(pool.available.pop())
            while len(victims) < count and pool.busy:
                victim = sorted(pool.busy)[0]
                pool.busy.discard(victim)
                victims.append(victim)

        self._discard(victims, reason="scale_down", force=False)
        if victims:
            logger.info(f"📉 Pool {pool.name} shrank by {len(victims)} → {pool.current_size}")
        return victims

    def _start_scaler(self, pool: _PoolState):
        if not pool.auto_scale or pool.id in self._scalers:
            return
        scaler = _AutoScaler(self, pool.id, self.settings.autoscale_interval)
        self._scalers[pool.id] = scaler
        scaler.start()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_pool(self, name: str, template: str, config: Optional[PoolConfig] = None) -> str:
        """
        Create a pool and eagerly provision ``min_size`` started agents.

        Raises:
            InvalidPoolSize: min > max
            TemplateNotFound: unknown template
        """
        config = config or PoolConfig()
        if config.min_size > config.max_size:
            raise InvalidPoolSize(
                f"min_size ({config.min_size}) exceeds max_size ({config.max_size})",
                subject=name,
            )
        tmpl = self.registry.catalog.get(template)

        pool = _PoolState(f"pool-{uuid.uuid4().hex[:12]}", name, tmpl.name, tmpl.type, config)
        pool.available.extend(self._provision(pool, config.min_size))

        with self._pools_lock:
            self._pools[pool.id] = pool
            if self._running:
                self._start_scaler(pool)

        logger.info(
            f"🏊 Pool created: {name} ({pool.id}) template={tmpl.name} "
            f"size={config.min_size} [{config.min_size}..{config.max_size}] auto_scale={config.auto_scale}"
        )
        return pool.id

    def scale_pool(self, pool_id: str, target_size: int, force: bool = False) -> AgentPool:
        pool = self._pool(pool_id)
        with self._scaling.lock(pool_id):
            with pool.lock:
                busy_count = len(pool.busy)
            if target_size < busy_count and not force:
                raise InsufficientCapacity(
                    f"Pool {pool.name} has {busy_count} busy agents; cannot shrink to {target_size}",
                    subject=pool_id,
                )
            if not pool.min_size <= target_size <= pool.max_size:
                raise InvalidPoolSize(
                    f"Target size {target_size} outside [{pool.min_size}, {pool.max_size}] for pool {pool.name}",
                    subject=pool_id,
                )
            with pool.lock:
                current = pool.current_size
            if target_size > current:
                self._grow(pool, target_size - current)
            elif target_size < current:
                self._shrink(pool, current - target_size, force=force)
        return pool.snapshot()

    def autoscale_once(self, pool_id: str) -> int:
        """
        One hysteresis check. Returns the size delta applied (0 if none).
        Grows above the high-water mark, shrinks below the low-water mark.
        """
        pool = self._pool(pool_id)
        step = self.settings.autoscale_step
        with self._scaling.lock(pool_id):
            with pool.lock:
                current = pool.current_size
                utilization = len(pool.busy) / current if current else 0.0
                idle = len(pool.available)
                grow = utilization > self.settings.scale_up_threshold and current < pool.max_size
                shrink = (
                    utilization < self.settings.scale_down_threshold
                    and current > pool.min_size
                    and idle > 0
                )
            if grow:
                return len(self._grow(pool, step))
            if shrink:
                count = min(step, current - pool.min_size, idle)
                return -len(self._shrink(pool, count))
        return 0

    def assign_agent(self, pool_id: str) -> AgentId:
        """
        Pop the longest-idle agent into ``busy``; grow first if the pool
        allows it. Members found inactive on the way out are retired.
        """
        pool = self._pool(pool_id)
        while True:
            with pool.lock:
                agent_id = pool.available.popleft() if pool.available else None
                if agent_id is not None:
                    pool.busy.add(agent_id)
                can_grow = pool.can_grow()

            if agent_id is None:
                if not can_grow:
                    raise PoolExhausted(
                        f"Pool {pool.name} has no available agents ({len(pool.busy)}/{pool.max_size} busy)",
                        subject=pool_id,
                    )
                with self._scaling.lock(pool_id):
                    self._grow(pool, self.settings.autoscale_step)
                continue

            agent = self.registry.get_agent(agent_id)
            if agent is not None and agent.status in ACTIVE_STATUSES:
                logger.debug(f"Assigned {agent_id} from pool {pool.name}")
                return agent.id
            self._retire(pool, agent_id, agent.status.value if agent else "missing")

    def release_agent(self, pool_id: str, agent_id: str) -> bool:
        """
        Return an agent to the tail of ``available``. Agents below the health
        floor, or no longer active, are retired instead and the pool is
        topped back up to ``min_size``. Returns True if the agent was retired.
        """
        pool = self._pool(pool_id)
        with pool.lock:
            if agent_id not in pool.busy:
                raise NotFound(f"Agent {agent_id} is not busy in pool {pool.name}", subject=agent_id)

        agent = self.registry.get_agent(agent_id)
        if agent is None or agent.status not in ACTIVE_STATUSES:
            self._retire(pool, agent_id, agent.status.value if agent else "missing")
            return True
        if agent.health < self.settings.retire_health_floor:
            self._retire(pool, agent_id, f"health {agent.health:.2f}")
            return True

        with pool.lock:
            if agent_id in pool.busy:
                pool.busy.discard(agent_id)
                pool.available.append(agent_id)
        return False

    def _retire(self, pool: _PoolState, agent_id: str, why: str) -> None:
        """Drop a member, stop and remove it, then top the pool back up to min_size."""
        with self._scaling.lock(pool.id):
            with pool.lock:
                pool.busy.discard(agent_id)
                if agent_id in pool.available:
                    pool.available.remove(agent_id)
            logger.warning(f"♻️ Retiring agent {agent_id} from pool {pool.name} ({why})")
            self._discard([agent_id], reason="retired", force=True)
            with pool.lock:
                shortfall = pool.min_size - pool.current_size
            if shortfall > 0 and self.settings.replace_retired:
                self._grow(pool, shortfall)

    def adopt(self, pool_id: str, agent_id: str) -> AgentPool:
        """
        Add an existing, started agent to the tail of ``available``.

        Raises:
            InvalidPoolSize: pool already at max_size
            ValueError: agent type differs from the pool's, agent not active,
                or agent already pooled
        """
        pool = self._pool(pool_id)
        if self.pool_of(agent_id) is not None:
            raise ValueError(f"Agent {agent_id} already belongs to a pool")
        agent = self.registry.require_agent(agent_id)
        if agent.type != pool.type:
            raise ValueError(
                f"Agent {agent_id} is a {agent.type.value}; pool {pool.name} holds {pool.type.value} agents"
            )
        if agent.status not in ACTIVE_STATUSES:
            raise ValueError(f"Agent {agent_id} must be running to join a pool (current: {agent.status.value})")

        with self._scaling.lock(pool_id):
            with pool.lock:
                if pool.current_size >= pool.max_size:
                    raise InvalidPoolSize(
                        f"Pool {pool.name} is full ({pool.current_size}/{pool.max_size})",
                        subject=pool_id,
                    )
                pool.available.append(agent_id)
        logger.info(f"Agent {agent_id} joined pool {pool.name}")
        return pool.snapshot()

    def resolve(self, ref: str) -> str:
        """Pool id for an id or a pool name."""
        with self._pools_lock:
            if ref in self._pools:
                return ref
            for pool in self._pools.values():
                if pool.name == ref:
                    return pool.id
        raise NotFound(f"Pool '{ref}' not found", subject=ref)

    def evict(self, agent_id: str) -> Optional[str]:
        """Forget an agent in pool bookkeeping (it was removed elsewhere)."""
        pool_id = self.pool_of(agent_id)
        if pool_id is None:
            return None
        pool = self._pool(pool_id)
        with pool.lock:
            pool.busy.discard(agent_id)
            if agent_id in pool.available:
                pool.available.remove(agent_id)
        logger.info(f"Agent {agent_id} evicted from pool {pool.name}")
        return pool_id

    def disband_pool(self, pool_id: str) -> List[str]:
        """Stop and remove every member, then delete the pool."""
        pool = self._pool(pool_id)
        with self._scaling.lock(pool_id):
            with self._pools_lock:
                self._pools.pop(pool_id, None)
                scaler = self._scalers.pop(pool_id, None)
            if scaler:
                scaler.stop()
            with pool.lock:
                members = list(pool.available) + sorted(pool.busy)
                pool.available.clear()
                pool.busy.clear()
            self._discard(members, reason="pool_disbanded", force=True)
        self._scaling.discard(pool_id)
        logger.info(f"🧹 Pool disbanded: {pool.name} ({len(members)} agents removed)")
        return members

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_pool(self, pool_id: str) -> AgentPool:
        return self._pool(pool_id).snapshot()

    def get_all_pools(self) -> List[AgentPool]:
        with self._pools_lock:
            pools = list(self._pools.values())
        return [p.snapshot() for p in pools]

    def pool_of(self, agent_id: str) -> Optional[str]:
        with self._pools_lock:
            pools = list(self._pools.values())
        for pool in pools:
            with pool.lock:
                if agent_id in pool.busy or agent_id in pool.available:
                    return pool.id
        return None

    # ------------------------------------------------------------------
    # Background scaling
    # ------------------------------------------------------------------

    def start(self):
        with self._pools_lock:
            self._running = True
            for pool in self._pools.values():
                self._start_scaler(pool)

    def stop(self):
        with self._pools_lock:
            self._running = False
            scalers = list(self._scalers.values())
            self._scalers.clear()
        for scaler in scalers:
            scaler.stop()
        for scaler in scalers:
            scaler.join(timeout=5)
