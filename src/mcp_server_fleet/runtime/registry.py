"""
AgentRegistry - canonical store of agents and their lifecycle.

Key capabilities:
- Atomic agent creation from templates (no residue on failure)
- Per-agent serialization: every status change happens under the agent's
  own re-entrant lock, so concurrent start/stop/health writes never race
- Bounded graceful stop: waits on the agent condition for workload to
  drain, escalates to a forced stop when the drain timeout expires
- Restart with a stable id and a bumped instance discriminator
- Task-slot accounting (workload, metrics, ordered task history)
- Heartbeat tracking with offline detection
- Per-agent activity log (bounded ring, erased with the agent)

All reads return deep-copy snapshots; no caller ever holds a live record.
"""

import contextlib
import logging
import threading
import time
import uuid
from collections import deque
from typing import Dict, Iterator, List, Optional

from .errors import DrainTimeout, InsufficientCapacity, InvalidTransition, NotFound
from .lifecycle import LifecycleEvent, next_status
from .models import (
    Agent,
    AgentConfig,
    AgentEnvironment,
    AgentId,
    AgentLogEntry,
    AgentOptions,
    AgentStatus,
    AgentType,
    MetricsSample,
    StopResult,
    TaskOutcome,
    TaskRecord,
    now_ms,
)
from .templates import TemplateCatalog

logger = logging.getLogger("fleet.registry")

TASK_HISTORY_LIMIT = 500

SORT_KEYS = {
    "name": (lambda a: a.name.lower(), False),
    "type": (lambda a: a.type.value, False),
    "status": (lambda a: a.status.value, False),
    "health": (lambda a: a.health, True),
    "workload": (lambda a: a.workload, True),
}


class _AgentRecord:
    """Live agent state plus its synchronization primitives."""

    def __init__(self, agent: Agent, log_size: int):
        self.agent = agent
        self.lock = threading.RLock()
        self.cond = threading.Condition(self.lock)
        self.running: Dict[str, TaskRecord] = {}
        self.logs = deque(maxlen=log_size)
        self.uptime_accum = 0
        self.removed = False

    def apply(self, event: LifecycleEvent) -> AgentStatus:
        previous = self.agent.status
        self.agent.status = next_status(previous, event, self.agent.id.id)
        self.log("info", f"{previous.value} → {self.agent.status.value} ({event.value})")
        self.cond.notify_all()
        return self.agent.status

    def log(self, level: str, message: str):
        self.logs.append(AgentLogEntry(level=level, message=message))

    def snapshot(self) -> Agent:
        agent = self.agent.snapshot()
        uptime = self.uptime_accum
        if agent.started_at is not None:
            uptime += max(0, now_ms() - agent.started_at)
        agent.metrics.total_uptime = uptime
        return agent


class AgentRegistry:
    """Thread-safe registry owning every Agent entity."""

    def __init__(
        self,
        catalog: Optional[TemplateCatalog] = None,
        drain_timeout: float = 30.0,
        log_size: int = 200,
        healthy_threshold: float = 0.7,
    ):
        self.catalog = catalog or TemplateCatalog()
        self.drain_timeout = drain_timeout
        self.log_size = log_size
        self.healthy_threshold = healthy_threshold

        self._agents: Dict[str, _AgentRecord] = {}
        self._lock = threading.RLock()
        self._closing = threading.Event()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, agent_id: str) -> _AgentRecord:
        with self._lock:
            record = self._agents.get(agent_id)
        if record is None:
            raise NotFound(f"Agent {agent_id} not found", subject=agent_id)
        return record

    @contextlib.contextmanager
    def _locked(self, agent_id: str) -> Iterator[_AgentRecord]:
        """Acquire the agent's lock; fails NotFound if it was removed meanwhile."""
        record = self._record(agent_id)
        with record.lock:
            if record.removed:
                raise NotFound(f"Agent {agent_id} not found", subject=agent_id)
            yield record

    def _records(self) -> List[_AgentRecord]:
        with self._lock:
            return list(self._agents.values())

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def create_agent(self, template: str, options: Optional[AgentOptions] = None) -> AgentId:
        """
        Allocate a new agent in `initializing` from a template.

        Everything (template lookup, option validation) is resolved before
        the registry is touched, so a failure leaves no partial agent behind.

        Raises:
            TemplateNotFound: unknown template
            pydantic.ValidationError: invalid config/environment overrides
        """
        options = options or AgentOptions()
        tmpl = self.catalog.get(template)

        suffix = uuid.uuid4().hex[:12]
        name = options.name or f"{tmpl.name}-{suffix[:6]}"
        config = AgentConfig.model_validate({**tmpl.config.model_dump(), **options.config})
        env_values = {**tmpl.environment.model_dump(), **options.environment}
        if "working_directory" not in options.environment and env_values["working_directory"] == ".":
            env_values["working_directory"] = f"./agents/{name}"
        environment = AgentEnvironment.model_validate(env_values)

        agent = Agent(
            id=AgentId(id=f"agent-{suffix}"),
            name=name,
            template=tmpl.name,
            type=AgentType(tmpl.type),
            config=config,
            environment=environment,
        )
        record = _AgentRecord(agent, self.log_size)
        record.log("info", f"Created from template '{tmpl.name}'")

        with self._lock:
            self._agents[agent.id.id] = record

        logger.info(f"🤖 Agent created: {name} ({agent.id.id}) from '{tmpl.name}'")
        return agent.id.model_copy()

    def start_agent(self, agent_id: str) -> Agent:
        """initializing | offline → idle (busy again if tasks are still in flight)."""
        with self._locked(agent_id) as record:
            agent = record.agent
            from_status = agent.status
            record.apply(LifecycleEvent.START)
            if agent.started_at is None:
                agent.started_at = now_ms()
            agent.last_heartbeat = now_ms()
            if agent.workload > 0:
                record.apply(LifecycleEvent.TASK_ASSIGNED)
            logger.info(f"🚀 Agent started: {agent.name} ({agent_id}) from {from_status.value}")
            return record.snapshot()

    def stop_agent(
        self,
        agent_id: str,
        reason: str = "user_request",
        force: bool = False,
        drain_timeout: Optional[float] = None,
    ) -> StopResult:
        """
        idle | busy | error → terminating → terminated.

        Graceful path waits (bounded by ``drain_timeout``) for workload to
        reach 0. When the bound expires, or the registry is shutting down,
        the stop escalates: in-flight tasks are aborted and the result has
        ``escalated=True``. ``force`` skips the wait.
        """
        timeout = self.drain_timeout if drain_timeout is None else drain_timeout
        with self._locked(agent_id) as record:
            agent = record.agent
            record.apply(LifecycleEvent.STOP)
            record.log("info", f"Stop requested (reason={reason}, force={force})")

            started = time.monotonic()
            escalated = False
            if not force and agent.workload > 0:
                try:
                    self._drain(record, timeout)
                except DrainTimeout as e:
                    escalated = True
                    record.log("warning", e.message)
                    logger.warning(f"⏱️ {e.message}; escalating to forced termination")
            drain_seconds = time.monotonic() - started

            aborted = self._abort_running(record) if agent.workload > 0 else []

            if agent.started_at is not None:
                record.uptime_accum += max(0, now_ms() - agent.started_at)
                agent.started_at = None
            record.apply(LifecycleEvent.FINALIZE)

            logger.info(
                f"🛑 Agent terminated: {agent.name} ({agent_id}) reason={reason} "
                f"forced={force} escalated={escalated}"
            )
            return StopResult(
                agent_id=agent_id,
                status=agent.status,
                reason=reason,
                forced=force or escalated,
                escalated=escalated,
                aborted_tasks=aborted,
                drain_seconds=round(drain_seconds, 3),
            )

    def _drain(self, record: _AgentRecord, timeout: float):
        """Wait for workload 0. Caller holds the record lock; the wait releases it."""
        drained = record.cond.wait_for(
            lambda: record.agent.workload == 0 or self._closing.is_set(),
            timeout=timeout,
        )
        if not drained or record.agent.workload > 0:
            cause = "registry shutting down" if self._closing.is_set() else f"{timeout}s drain timeout"
            raise DrainTimeout(
                f"Agent {record.agent.id.id} still has {record.agent.workload} task(s) after {cause}",
                subject=record.agent.id.id,
            )

    def _abort_running(self, record: _AgentRecord) -> List[str]:
        aborted = list(record.running)
        finished = now_ms()
        for task in record.running.values():
            task.status = TaskOutcome.ABORTED
            task.finished_at = finished
            task.duration_ms = float(finished - task.started_at)
        record.running.clear()
        record.agent.workload = 0
        if aborted:
            record.log("warning", f"Aborted {len(aborted)} in-flight task(s)")
        return aborted

    def restart_agent(self, agent_id: str, reason: str = "restart") -> Agent:
        """
        Stop (graceful, bounded) and start again with the same id, name,
        template, config and environment. Bumps ``restart_count`` and the
        identity instance.
        """
        with self._locked(agent_id) as record:
            agent = record.agent
            if agent.status != AgentStatus.TERMINATED:
                self.stop_agent(agent_id, reason=f"restart: {reason}")
            record.apply(LifecycleEvent.RESTART)
            agent.restart_count += 1
            agent.id = AgentId(id=agent.id.id, instance=agent.id.instance + 1)
            agent.health = 1.0
            record.log("info", f"Restarting (reason={reason}, restart #{agent.restart_count})")
            logger.info(f"🔄 Restarting agent {agent.name} ({agent_id}) reason={reason}")
            return self.start_agent(agent_id)

    def remove_agent(self, agent_id: str) -> None:
        """Erase a terminated agent and its activity log."""
        with self._locked(agent_id) as record:
            if record.agent.status != AgentStatus.TERMINATED:
                raise InvalidTransition(
                    f"Agent {agent_id} must be terminated before removal "
                    f"(current: {record.agent.status.value})",
                    subject=agent_id,
                    state=record.agent.status.value,
                    event="remove",
                )
            with self._lock:
                del self._agents[agent_id]
            record.removed = True
            record.logs.clear()
        logger.info(f"🧹 Agent removed: {agent_id}")

    def wait_terminated(self, agent_id: str, timeout: float) -> bool:
        """Block until a stop in progress elsewhere finishes. False on timeout or shutdown."""
        with self._locked(agent_id) as record:
            record.cond.wait_for(
                lambda: record.agent.status == AgentStatus.TERMINATED or self._closing.is_set(),
                timeout=timeout,
            )
            return record.agent.status == AgentStatus.TERMINATED

    # ------------------------------------------------------------------
    # Task slots
    # ------------------------------------------------------------------

    def begin_task(self, agent_id: str, task_type: str = "generic") -> str:
        """Occupy one task slot. idle → busy on the first task."""
        with self._locked(agent_id) as record:
            agent = record.agent
            if agent.status not in (AgentStatus.IDLE, AgentStatus.BUSY):
                raise InvalidTransition(
                    f"Agent {agent_id} cannot accept tasks in state '{agent.status.value}'",
                    subject=agent_id,
                    state=agent.status.value,
                    event=LifecycleEvent.TASK_ASSIGNED.value,
                )
            if agent.workload >= agent.config.max_concurrent_tasks:
                raise InsufficientCapacity(
                    f"Agent {agent_id} is at capacity ({agent.config.max_concurrent_tasks} tasks)",
                    subject=agent_id,
                )

            task = TaskRecord(task_id=f"task-{uuid.uuid4().hex[:8]}", type=task_type)
            record.running[task.task_id] = task
            agent.task_history.append(task)
            if len(agent.task_history) > TASK_HISTORY_LIMIT:
                del agent.task_history[:-TASK_HISTORY_LIMIT]
            agent.workload += 1
            agent.metrics.last_activity = task.started_at
            if agent.status == AgentStatus.IDLE:
                record.apply(LifecycleEvent.TASK_ASSIGNED)
            return task.task_id

    def complete_task(
        self,
        agent_id: str,
        task_id: str,
        success: bool = True,
        duration_ms: Optional[float] = None,
    ) -> Agent:
        """Release a task slot and fold the outcome into the agent's metrics."""
        with self._locked(agent_id) as record:
            agent = record.agent
            task = record.running.pop(task_id, None)
            if task is None:
                raise NotFound(f"Task {task_id} is not running on agent {agent_id}", subject=task_id)

            finished = now_ms()
            task.status = TaskOutcome.COMPLETED if success else TaskOutcome.FAILED
            task.finished_at = finished
            task.duration_ms = float(duration_ms if duration_ms is not None else finished - task.started_at)

            m = agent.metrics
            if success:
                m.tasks_completed += 1
            else:
                m.tasks_failed += 1
            total = m.tasks_completed + m.tasks_failed
            m.success_rate = m.tasks_completed / total
            m.average_execution_time += (task.duration_ms - m.average_execution_time) / total
            m.last_activity = finished

            agent.workload -= 1
            if agent.workload == 0 and agent.status == AgentStatus.BUSY:
                record.apply(LifecycleEvent.DRAINED)
            record.cond.notify_all()
            return record.snapshot()

    # ------------------------------------------------------------------
    # Faults, heartbeats, metrics
    # ------------------------------------------------------------------

    def report_fault(self, agent_id: str, message: str) -> Agent:
        with self._locked(agent_id) as record:
            record.apply(LifecycleEvent.FAULT)
            record.log("error", message)
            logger.error(f"❌ Agent {agent_id} fault: {message}")
            return record.snapshot()

    def heartbeat(self, agent_id: str) -> Agent:
        """Refresh the heartbeat; an offline agent is restored."""
        with self._locked(agent_id) as record:
            agent = record.agent
            agent.last_heartbeat = now_ms()
            if agent.status == AgentStatus.OFFLINE:
                record.apply(LifecycleEvent.HEARTBEAT_RESTORED)
                if agent.workload > 0:
                    record.apply(LifecycleEvent.TASK_ASSIGNED)
                logger.info(f"📶 Agent {agent_id} back online")
            return record.snapshot()

    def check_heartbeats(self, stale_after: float) -> List[str]:
        """Mark idle/busy/error agents without a recent heartbeat as offline."""
        threshold_ms = stale_after * 1000
        marked = []
        for record in self._records():
            with record.lock:
                agent = record.agent
                if record.removed or agent.status not in (
                    AgentStatus.IDLE, AgentStatus.BUSY, AgentStatus.ERROR
                ):
                    continue
                if now_ms() - agent.last_heartbeat > threshold_ms:
                    record.apply(LifecycleEvent.HEARTBEAT_MISSED)
                    marked.append(agent.id.id)
        if marked:
            logger.warning(f"📴 Heartbeat missed, marked offline: {', '.join(marked)}")
        return marked

    def record_metrics(self, agent_id: str, sample: MetricsSample) -> None:
        with self._locked(agent_id) as record:
            m = record.agent.metrics
            m.cpu_usage = sample.cpu_usage
            m.memory_usage = sample.memory_usage
            m.disk_usage = sample.disk_usage
            m.response_time = sample.response_time

    def record_health(self, agent_id: str, score: float) -> None:
        with self._locked(agent_id) as record:
            record.agent.health = min(1.0, max(0.0, score))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        """Snapshot of one agent, or None if unknown."""
        try:
            with self._locked(agent_id) as record:
                return record.snapshot()
        except NotFound:
            return None

    def require_agent(self, agent_id: str) -> Agent:
        with self._locked(agent_id) as record:
            return record.snapshot()

    def get_all_agents(self) -> List[Agent]:
        agents = []
        for record in self._records():
            with record.lock:
                if not record.removed:
                    agents.append(record.snapshot())
        return agents

    def list_agents(
        self,
        type: Optional[str] = None,
        status: Optional[str] = None,
        unhealthy: bool = False,
        sort: str = "name",
    ) -> List[Agent]:
        """Filtered, sorted snapshots (sort: name, type, status, health, workload)."""
        if sort not in SORT_KEYS:
            raise ValueError(f"Unknown sort field '{sort}' (expected one of {', '.join(SORT_KEYS)})")
        agents = self.get_all_agents()
        if type:
            agents = [a for a in agents if a.type.value == type]
        if status:
            agents = [a for a in agents if a.status.value == status]
        if unhealthy:
            agents = [a for a in agents if a.health < self.healthy_threshold]
        key, reverse = SORT_KEYS[sort]
        return sorted(agents, key=key, reverse=reverse)

    def get_agent_logs(self, agent_id: str, limit: int = 50) -> List[AgentLogEntry]:
        with self._locked(agent_id) as record:
            entries = list(record.logs)
        if limit <= 0:
            return []
        return [e.model_copy() for e in entries[-limit:]]

    def __len__(self) -> int:
        with self._lock:
            return len(self._agents)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Interrupt pending drains; they escalate immediately."""
        self._closing.set()
        for record in self._records():
            with record.cond:
                record.cond.notify_all()

    @property
    def closing(self) -> bool:
        return self._closing.is_set()
