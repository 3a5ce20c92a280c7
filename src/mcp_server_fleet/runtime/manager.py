"""
AgentManager - the fleet facade.

Wires the registry, health monitor, pool manager, state preservation and
stats into one explicitly constructed object and owns the background
loops (health sampling, heartbeat checks, per-pool auto-scaling).

Usage:
    with AgentManager(load_settings()) as manager:
        agent_id = manager.create_agent("researcher")
        manager.start_agent(agent_id.id)
"""

import logging
import threading
from typing import List, Optional

from .config import FleetSettings
from .errors import FleetError, NotFound, PersistenceFailure
from .health import HealthMonitor
from .metrics_source import MetricsSource, ReportedMetricsSource
from .models import (
    Agent,
    AgentId,
    AgentLogEntry,
    AgentOptions,
    AgentPool,
    AgentStatus,
    HealthReport,
    MetricsSample,
    PoolConfig,
    StopResult,
    SystemStats,
)
from .pool import PoolManager
from .preservation import PreservedAgentState, StatePreservation
from .registry import AgentRegistry
from .stats import StatsAggregator
from .store import JSONFileStore, KeyValueStore
from .templates import AgentTemplate, TemplateCatalog, TemplateWatcher

logger = logging.getLogger("fleet.manager")


class AgentManager:
    def __init__(
        self,
        settings: Optional[FleetSettings] = None,
        store: Optional[KeyValueStore] = None,
        metrics_source: Optional[MetricsSource] = None,
        catalog: Optional[TemplateCatalog] = None,
    ):
        self.settings = settings or FleetSettings()
        s = self.settings

        self.catalog = catalog or TemplateCatalog(templates_file=s.templates_file)
        self.registry = AgentRegistry(
            self.catalog,
            drain_timeout=s.drain_timeout,
            log_size=s.agent_log_size,
            healthy_threshold=s.healthy_threshold,
        )
        self.metrics_source = metrics_source or ReportedMetricsSource()
        self.health = HealthMonitor(self.registry, self.metrics_source, s)
        self.pools = PoolManager(self.registry, s)
        self.store = store if store is not None else JSONFileStore(s.archive_dir, s.lock_dir)
        self.preservation = StatePreservation(self.store, timeout=s.store_timeout)
        self.stats = StatsAggregator(self.registry, self.pools, s.healthy_threshold)

        self._watcher: Optional[TemplateWatcher] = None
        if s.watch_templates and self.catalog.templates_file is not None:
            self._watcher = TemplateWatcher(self.catalog)

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._state_lock = threading.Lock()
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle of the manager itself
    # ------------------------------------------------------------------

    def start(self) -> "AgentManager":
        """Launch background loops. Safe to call more than once."""
        with self._state_lock:
            if self._started or self._closed:
                return self
            self._started = True

        self._threads = [
            threading.Thread(target=self._health_loop, name="fleet-health", daemon=True),
            threading.Thread(target=self._heartbeat_loop, name="fleet-heartbeat", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        self.pools.start()
        if self._watcher:
            self._watcher.start()
        logger.info("✅ Fleet manager started")
        return self

    def shutdown(self) -> None:
        """Stop loops and interrupt pending drains. Idempotent."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True

        self._stop_event.set()
        self.registry.shutdown()
        self.pools.stop()
        if self._watcher:
            self._watcher.stop()
        for thread in self._threads:
            thread.join(timeout=5)
        self.health.shutdown()
        self.preservation.shutdown()
        logger.info("🛑 Fleet manager shut down")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    def _health_loop(self):
        while not self._stop_event.wait(self.settings.health_interval):
            try:
                self.health.sample_all()
            except Exception as e:
                logger.error(f"Health sampling cycle failed: {e}")

    def _heartbeat_loop(self):
        while not self._stop_event.wait(self.settings.heartbeat_interval):
            try:
                self.registry.check_heartbeats(self.settings.heartbeat_stale_after)
            except Exception as e:
                logger.error(f"Heartbeat check failed: {e}")

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def create_agent(self, template: str, options: Optional[AgentOptions] = None,
                     pool: Optional[str] = None) -> AgentId:
        """
        Create an agent from a template. With ``pool`` (id or name) the agent
        is started and joins that pool's available list; if joining fails
        the agent is torn down again.
        """
        if pool is None:
            return self.registry.create_agent(template, options)

        pool_id = self.pools.resolve(pool)
        agent_id = self.registry.create_agent(template, options)
        try:
            self.registry.start_agent(agent_id.id)
            self.pools.adopt(pool_id, agent_id.id)
        except (FleetError, ValueError):
            self._teardown(agent_id.id)
            raise
        return agent_id

    def _teardown(self, agent_id: str) -> None:
        agent = self.registry.get_agent(agent_id)
        if agent is None:
            return
        if agent.status == AgentStatus.INITIALIZING:
            self.registry.report_fault(agent_id, "Pool join failed")
        self.registry.stop_agent(agent_id, reason="pool_join_failed", force=True)
        self.registry.remove_agent(agent_id)

    def start_agent(self, agent_id: str) -> Agent:
        return self.registry.start_agent(agent_id)

    def stop_agent(
        self,
        agent_id: str,
        reason: str = "user_request",
        force: bool = False,
        preserve: bool = False,
        drain_timeout: Optional[float] = None,
        cleanup: bool = False,
    ) -> StopResult:
        """
        Terminate an agent, optionally archiving its final state and then
        removing it (``cleanup``), pool membership included.

        Once the stop itself succeeded nothing after it fails the call;
        archival or cleanup problems are logged and reported in
        ``StopResult.warnings``.
        """
        result = self.registry.stop_agent(agent_id, reason=reason, force=force, drain_timeout=drain_timeout)
        if preserve:
            try:
                snapshot = self.registry.require_agent(agent_id)
                result.preserved_key = self.preservation.preserve(snapshot, reason, preserved_by="user")
            except NotFound:
                message = f"Agent {agent_id} was removed before its state could be preserved"
                logger.warning(f"⚠️ {message}")
                result.warnings.append(message)
            except PersistenceFailure as e:
                logger.warning(f"⚠️ Agent {agent_id} terminated but state was not preserved: {e.message}")
                result.warnings.append(e.message)
        if cleanup:
            try:
                self.remove_agent(agent_id)
                result.removed = True
            except FleetError as e:
                logger.warning(f"⚠️ Agent {agent_id} terminated but cleanup failed: {e.message}")
                result.warnings.append(e.message)
        return result

    def restart_agent(self, agent_id: str, reason: str = "restart") -> Agent:
        return self.registry.restart_agent(agent_id, reason=reason)

    def remove_agent(self, agent_id: str) -> None:
        self.registry.remove_agent(agent_id)
        self.health.forget(agent_id)
        self.pools.evict(agent_id)
        if isinstance(self.metrics_source, ReportedMetricsSource):
            self.metrics_source.forget(agent_id)

    def get_agent(self, agent_id: str) -> Agent:
        return self.registry.require_agent(agent_id)

    def get_all_agents(
        self,
        type: Optional[str] = None,
        status: Optional[str] = None,
        unhealthy: bool = False,
        sort: str = "name",
    ) -> List[Agent]:
        return self.registry.list_agents(type=type, status=status, unhealthy=unhealthy, sort=sort)

    def get_agent_health(self, agent_id: str) -> HealthReport:
        return self.health.get_report(agent_id)

    def get_agent_logs(self, agent_id: str, limit: int = 50) -> List[AgentLogEntry]:
        return self.registry.get_agent_logs(agent_id, limit)

    def get_system_stats(self) -> SystemStats:
        return self.stats.get_system_stats()

    def get_agent_templates(self) -> List[AgentTemplate]:
        return self.catalog.list()

    # ------------------------------------------------------------------
    # Tasks, heartbeats, metrics
    # ------------------------------------------------------------------

    def begin_task(self, agent_id: str, task_type: str = "generic") -> str:
        return self.registry.begin_task(agent_id, task_type)

    def complete_task(self, agent_id: str, task_id: str, success: bool = True,
                      duration_ms: Optional[float] = None) -> Agent:
        return self.registry.complete_task(agent_id, task_id, success=success, duration_ms=duration_ms)

    def heartbeat(self, agent_id: str) -> Agent:
        return self.registry.heartbeat(agent_id)

    def report_fault(self, agent_id: str, message: str) -> Agent:
        return self.registry.report_fault(agent_id, message)

    def report_metrics(self, agent_id: str, sample: MetricsSample) -> None:
        """Record a resource reading now and offer it to the next sampling cycle."""
        self.registry.record_metrics(agent_id, sample)
        if isinstance(self.metrics_source, ReportedMetricsSource):
            self.metrics_source.report(agent_id, sample)

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    def create_agent_pool(self, name: str, template: str, min_size: int = 1, max_size: int = 10,
                          auto_scale: bool = False) -> AgentPool:
        config = PoolConfig(min_size=min_size, max_size=max_size, auto_scale=auto_scale)
        return self.pools.get_pool(self.pools.create_pool(name, template, config))

    def get_pool(self, pool_id: str) -> AgentPool:
        return self.pools.get_pool(pool_id)

    def get_all_pools(self) -> List[AgentPool]:
        return self.pools.get_all_pools()

    def scale_pool(self, pool_id: str, target_size: int, force: bool = False) -> AgentPool:
        return self.pools.scale_pool(pool_id, target_size, force=force)

    def assign_agent(self, pool_id: str) -> AgentId:
        return self.pools.assign_agent(pool_id)

    def release_agent(self, pool_id: str, agent_id: str) -> bool:
        return self.pools.release_agent(pool_id, agent_id)

    def disband_pool(self, pool_id: str) -> List[str]:
        members = self.pools.disband_pool(pool_id)
        for agent_id in members:
            self.health.forget(agent_id)
        return members

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    def list_preserved(self) -> List[str]:
        return self.preservation.list_preserved()

    def load_preserved(self, agent_id: str, instance: int = 1) -> Optional[PreservedAgentState]:
        return self.preservation.load(agent_id, instance)
