"""
MCP service surface for the fleet manager.

``build_server(manager)`` registers one tool per fleet operation on a
FastMCP server. Tools are thin: the work happens in FleetTools.
"""

import os
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from .runtime.fleet_ops import FleetTools
from .runtime.manager import AgentManager

# Keep stdout clean for the JSON-RPC stdio transport
os.environ.setdefault("FASTMCP_SHOW_CLI_BANNER", "False")
os.environ.setdefault("FASTMCP_LOG_LEVEL", "WARNING")


def build_server(manager: AgentManager, name: str = "Agent Fleet") -> FastMCP:
    mcp = FastMCP(name)
    tools = FleetTools(manager)

    # ── Agents ───────────────────────────────────────────────────

    @mcp.tool()
    def create_agent(template: str, name: Optional[str] = None,
                     config: Optional[Dict[str, Any]] = None,
                     environment: Optional[Dict[str, Any]] = None,
                     start: bool = True, pool: Optional[str] = None) -> str:
        """
        [FLEET] Creates an agent from a template (coordinator, researcher,
        implementer, analyst, custom or a file-defined one) and starts it.
        config/environment override the template defaults. pool (id or name)
        adds the started agent to that pool.
        """
        return tools.create_agent(template, name, config, environment, start, pool)

    @mcp.tool()
    def start_agent(agent_id: str) -> str:
        """[FLEET] Starts an initializing or offline agent."""
        return tools.start_agent(agent_id)

    @mcp.tool()
    def stop_agent(agent_id: str, reason: str = "user_request",
                   force: bool = False, preserve: bool = False, cleanup: bool = False) -> str:
        """
        [FLEET] Terminates an agent. Graceful by default: waits (bounded)
        for in-flight tasks to drain, then escalates. preserve=True archives
        the final state for later revival.
        cleanup=True removes the agent afterwards.
        """
        return tools.stop_agent(agent_id, reason, force, preserve, cleanup)

    @mcp.tool()
    def restart_agent(agent_id: str, reason: str = "restart") -> str:
        """[FLEET] Stops and starts an agent, keeping its id and configuration."""
        return tools.restart_agent(agent_id, reason)

    @mcp.tool()
    def remove_agent(agent_id: str) -> str:
        """[FLEET] Erases a terminated agent and its activity log."""
        return tools.remove_agent(agent_id)

    @mcp.tool()
    def get_agent(agent_id: str) -> str:
        """[FLEET] Returns a full snapshot of one agent."""
        return tools.get_agent(agent_id)

    @mcp.tool()
    def get_all_agents(type: Optional[str] = None, status: Optional[str] = None,
                       unhealthy: bool = False, sort: str = "name") -> str:
        """
        [FLEET] Lists agents. Filter by type/status, unhealthy=True for
        health < 0.7. sort: name, type, status, health, workload.
        """
        return tools.get_all_agents(type, status, unhealthy, sort)

    @mcp.tool()
    def get_agent_health(agent_id: str) -> str:
        """[FLEET] Latest health report: components, trend and issues."""
        return tools.get_agent_health(agent_id)

    @mcp.tool()
    def get_agent_logs(agent_id: str, limit: int = 50) -> str:
        """[FLEET] Most recent activity log entries of an agent."""
        return tools.get_agent_logs(agent_id, limit)

    @mcp.tool()
    def get_system_stats() -> str:
        """[FLEET] Fleet-wide counters, health and resource utilization."""
        return tools.get_system_stats()

    @mcp.tool()
    def get_agent_templates() -> str:
        """[FLEET] Lists the agent templates available to create_agent."""
        return tools.get_agent_templates()

    # ── Tasks ────────────────────────────────────────────────────

    @mcp.tool()
    def begin_task(agent_id: str, task_type: str = "generic") -> str:
        """[FLEET] Occupies one task slot on an agent. Returns the task id."""
        return tools.begin_task(agent_id, task_type)

    @mcp.tool()
    def complete_task(agent_id: str, task_id: str, success: bool = True,
                      duration_ms: Optional[float] = None) -> str:
        """[FLEET] Releases a task slot and records the outcome."""
        return tools.complete_task(agent_id, task_id, success, duration_ms)

    @mcp.tool()
    def heartbeat(agent_id: str) -> str:
        """[FLEET] Liveness ping. Restores an offline agent."""
        return tools.heartbeat(agent_id)

    @mcp.tool()
    def report_fault(agent_id: str, message: str) -> str:
        """[FLEET] Moves an agent to the error state."""
        return tools.report_fault(agent_id, message)

    @mcp.tool()
    def report_metrics(agent_id: str, cpu_usage: float = 0.0, memory_usage: int = 0,
                       disk_usage: float = 0.0, response_time: float = 0.0) -> str:
        """
        [FLEET] Pushes a resource reading (cpu/disk as 0..1 fractions,
        memory in bytes, response time in ms) for health scoring.
        """
        return tools.report_metrics(agent_id, cpu_usage, memory_usage, disk_usage, response_time)

    # ── Pools ────────────────────────────────────────────────────

    @mcp.tool()
    def create_agent_pool(name: str, template: str, min_size: int = 1,
                          max_size: int = 10, auto_scale: bool = False) -> str:
        """[POOL] Creates a pool and provisions min_size started agents."""
        return tools.create_agent_pool(name, template, min_size, max_size, auto_scale)

    @mcp.tool()
    def get_all_pools() -> str:
        """[POOL] Lists pools with their available/busy members."""
        return tools.get_all_pools()

    @mcp.tool()
    def scale_pool(pool_id: str, target_size: int, force: bool = False) -> str:
        """
        [POOL] Resizes a pool within [min_size, max_size]. Shrinking below
        the busy count requires force=True.
        """
        return tools.scale_pool(pool_id, target_size, force)

    @mcp.tool()
    def assign_agent(pool_id: str) -> str:
        """[POOL] Hands out the longest-idle agent of a pool."""
        return tools.assign_agent(pool_id)

    @mcp.tool()
    def release_agent(pool_id: str, agent_id: str) -> str:
        """[POOL] Returns an agent to its pool; unhealthy agents are retired."""
        return tools.release_agent(pool_id, agent_id)

    @mcp.tool()
    def disband_pool(pool_id: str) -> str:
        """[POOL] Stops and removes every member, then deletes the pool."""
        return tools.disband_pool(pool_id)

    # ── Archive ──────────────────────────────────────────────────

    @mcp.tool()
    def list_preserved_agents() -> str:
        """[ARCHIVE] Keys of archived agent states."""
        return tools.list_preserved()

    return mcp
