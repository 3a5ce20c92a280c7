"""Fleet Operations - MCP tool implementations over an AgentManager.

Every method returns the standard JSON envelope produced by
``make_response``; FleetError subclasses map to their ``code``.
"""

import logging
from typing import Any, Callable, Dict, Optional

from .common import error_response, make_response
from .manager import AgentManager
from .models import AgentOptions, MetricsSample

logger = logging.getLogger("fleet.ops")


def _dump(value):
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


class FleetTools:
    def __init__(self, manager: AgentManager):
        self.manager = manager

    def _call(self, fn: Callable[[], Any]) -> str:
        try:
            return make_response(True, data=_dump(fn()))
        except Exception as e:
            logger.debug(f"Tool call failed: {e}")
            return error_response(e)

    # ── Agents ───────────────────────────────────────────────────

    def create_agent(self, template: str, name: Optional[str] = None,
                     config: Optional[Dict[str, Any]] = None,
                     environment: Optional[Dict[str, Any]] = None,
                     start: bool = True, pool: Optional[str] = None) -> str:
        def run():
            options = AgentOptions(name=name, config=config or {}, environment=environment or {})
            agent_id = self.manager.create_agent(template, options, pool=pool)
            # Pool members are started on creation
            if start and pool is None:
                return self.manager.start_agent(agent_id.id)
            return self.manager.get_agent(agent_id.id)
        return self._call(run)

    def start_agent(self, agent_id: str) -> str:
        return self._call(lambda: self.manager.start_agent(agent_id))

    def stop_agent(self, agent_id: str, reason: str = "user_request",
                   force: bool = False, preserve: bool = False, cleanup: bool = False) -> str:
        return self._call(lambda: self.manager.stop_agent(agent_id, reason=reason, force=force,
                                                          preserve=preserve, cleanup=cleanup))

    def restart_agent(self, agent_id: str, reason: str = "restart") -> str:
        return self._call(lambda: self.manager.restart_agent(agent_id, reason=reason))

    def remove_agent(self, agent_id: str) -> str:
        def run():
            self.manager.remove_agent(agent_id)
            return {"removed": agent_id}
        return self._call(run)

    def get_agent(self, agent_id: str) -> str:
        return self._call(lambda: self.manager.get_agent(agent_id))

    def get_all_agents(self, type: Optional[str] = None, status: Optional[str] = None,
                       unhealthy: bool = False, sort: str = "name") -> str:
        return self._call(lambda: self.manager.get_all_agents(type=type, status=status,
                                                              unhealthy=unhealthy, sort=sort))

    def get_agent_health(self, agent_id: str) -> str:
        return self._call(lambda: self.manager.get_agent_health(agent_id))

    def get_agent_logs(self, agent_id: str, limit: int = 50) -> str:
        return self._call(lambda: self.manager.get_agent_logs(agent_id, limit))

    def get_system_stats(self) -> str:
        return self._call(self.manager.get_system_stats)

    def get_agent_templates(self) -> str:
        return self._call(self.manager.get_agent_templates)

    # ── Tasks ────────────────────────────────────────────────────

    def begin_task(self, agent_id: str, task_type: str = "generic") -> str:
        return self._call(lambda: {"task_id": self.manager.begin_task(agent_id, task_type)})

    def complete_task(self, agent_id: str, task_id: str, success: bool = True,
                      duration_ms: Optional[float] = None) -> str:
        return self._call(lambda: self.manager.complete_task(agent_id, task_id, success, duration_ms))

    def heartbeat(self, agent_id: str) -> str:
        return self._call(lambda: self.manager.heartbeat(agent_id))

    def report_fault(self, agent_id: str, message: str) -> str:
        return self._call(lambda: self.manager.report_fault(agent_id, message))

    def report_metrics(self, agent_id: str, cpu_usage: float = 0.0, memory_usage: int = 0,
                       disk_usage: float = 0.0, response_time: float = 0.0) -> str:
        def run():
            sample = MetricsSample(cpu_usage=cpu_usage, memory_usage=memory_usage,
                                   disk_usage=disk_usage, response_time=response_time)
            self.manager.report_metrics(agent_id, sample)
            return sample
        return self._call(run)

    # ── Pools ────────────────────────────────────────────────────

    def create_agent_pool(self, name: str, template: str, min_size: int = 1,
                          max_size: int = 10, auto_scale: bool = False) -> str:
        return self._call(lambda: self.manager.create_agent_pool(name, template, min_size, max_size, auto_scale))

    def get_all_pools(self) -> str:
        def run():
            return [
                {**p.model_dump(mode="json"), "utilization": p.utilization}
                for p in self.manager.get_all_pools()
            ]
        return self._call(run)

    def scale_pool(self, pool_id: str, target_size: int, force: bool = False) -> str:
        return self._call(lambda: self.manager.scale_pool(pool_id, target_size, force=force))

    def assign_agent(self, pool_id: str) -> str:
        return self._call(lambda: self.manager.assign_agent(pool_id))

    def release_agent(self, pool_id: str, agent_id: str) -> str:
        return self._call(lambda: {"agent_id": agent_id,
                                   "retired": self.manager.release_agent(pool_id, agent_id)})

    def disband_pool(self, pool_id: str) -> str:
        return self._call(lambda: {"pool_id": pool_id, "removed_agents": self.manager.disband_pool(pool_id)})

    # ── Archive ──────────────────────────────────────────────────

    def list_preserved(self) -> str:
        return self._call(self.manager.list_preserved)
