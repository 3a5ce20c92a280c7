"""
Fleet data model.

Agents, pools and health reports are explicit pydantic records. The
registry and pool manager own the live instances; everything handed to a
caller is a deep copy produced by ``snapshot()``.
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


class AgentType(str, Enum):
    """Agent variants offered by the template catalog."""
    COORDINATOR = "coordinator"
    RESEARCHER = "researcher"
    IMPLEMENTER = "implementer"
    ANALYST = "analyst"
    CUSTOM = "custom"


class AgentStatus(str, Enum):
    """Agent lifecycle states."""
    INITIALIZING = "initializing"
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    OFFLINE = "offline"


ACTIVE_STATUSES = (AgentStatus.IDLE, AgentStatus.BUSY)


class TaskOutcome(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class HealthTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AgentId(BaseModel):
    """Stable agent id plus an instance discriminator bumped on restart."""
    id: str
    instance: int = 1

    def __str__(self) -> str:
        return f"{self.id}#{self.instance}"


class AgentConfig(BaseModel):
    autonomy_level: float = Field(default=0.7, ge=0.0, le=1.0)
    max_concurrent_tasks: int = Field(default=5, ge=1)
    timeout_threshold: int = Field(default=300_000, gt=0, description="Task timeout in milliseconds")


class AgentEnvironment(BaseModel):
    max_memory_usage: int = Field(default=512 * 1024 * 1024, gt=0, description="Memory limit in bytes")
    runtime: str = "python"
    working_directory: str = "."


class AgentMetrics(BaseModel):
    tasks_completed: int = 0
    tasks_failed: int = 0
    success_rate: float = 1.0
    cpu_usage: float = Field(default=0.0, ge=0.0, le=1.0)
    memory_usage: int = Field(default=0, ge=0, description="Resident memory in bytes")
    disk_usage: float = Field(default=0.0, ge=0.0, le=1.0)
    average_execution_time: float = 0.0
    total_uptime: int = 0
    response_time: float = 0.0
    last_activity: int = Field(default_factory=now_ms)


class TaskRecord(BaseModel):
    task_id: str
    type: str = "generic"
    status: TaskOutcome = TaskOutcome.RUNNING
    started_at: int = Field(default_factory=now_ms)
    finished_at: Optional[int] = None
    duration_ms: Optional[float] = None


class AgentLogEntry(BaseModel):
    timestamp: int = Field(default_factory=now_ms)
    level: str = "info"
    message: str


class Agent(BaseModel):
    """A worker slot tracked by lifecycle state, capacity and health."""
    id: AgentId
    name: str
    template: str
    type: AgentType
    status: AgentStatus = AgentStatus.INITIALIZING
    health: float = Field(default=1.0, ge=0.0, le=1.0)
    workload: int = Field(default=0, ge=0)
    config: AgentConfig = Field(default_factory=AgentConfig)
    environment: AgentEnvironment = Field(default_factory=AgentEnvironment)
    metrics: AgentMetrics = Field(default_factory=AgentMetrics)
    task_history: List[TaskRecord] = Field(default_factory=list)
    last_heartbeat: int = Field(default_factory=now_ms)
    created_at: int = Field(default_factory=now_ms)
    started_at: Optional[int] = None
    restart_count: int = 0

    def snapshot(self) -> "Agent":
        return self.model_copy(deep=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class AgentOptions(BaseModel):
    """Caller overrides applied on top of a template's defaults."""
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, Any] = Field(default_factory=dict)


class MetricsSample(BaseModel):
    """Raw per-agent resource reading supplied by a metrics source."""
    cpu_usage: float = Field(default=0.0, ge=0.0, le=1.0)
    memory_usage: int = Field(default=0, ge=0)
    disk_usage: float = Field(default=0.0, ge=0.0, le=1.0)
    response_time: float = Field(default=0.0, ge=0.0)
    timestamp: int = Field(default_factory=now_ms)


class HealthComponents(BaseModel):
    responsiveness: float = Field(default=1.0, ge=0.0, le=1.0)
    performance: float = Field(default=1.0, ge=0.0, le=1.0)
    reliability: float = Field(default=1.0, ge=0.0, le=1.0)
    resource_usage: float = Field(default=1.0, ge=0.0, le=1.0)


class HealthIssue(BaseModel):
    severity: IssueSeverity
    component: str
    message: str
    recommended_action: str


class HealthReport(BaseModel):
    agent_id: str
    overall: float = Field(ge=0.0, le=1.0)
    components: HealthComponents
    trend: HealthTrend = HealthTrend.STABLE
    issues: List[HealthIssue] = Field(default_factory=list)
    last_check: int = Field(default_factory=now_ms)


class AgentPool(BaseModel):
    """Pool snapshot. ``available_agents`` is in FIFO assignment order."""
    id: str
    name: str
    template: str
    type: AgentType
    current_size: int
    min_size: int
    max_size: int
    auto_scale: bool = False
    available_agents: List[str] = Field(default_factory=list)
    busy_agents: List[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)

    @property
    def utilization(self) -> float:
        return len(self.busy_agents) / self.current_size if self.current_size else 0.0


class PoolConfig(BaseModel):
    min_size: int = Field(default=1, ge=0)
    max_size: int = Field(default=10, ge=1)
    auto_scale: bool = False


class ResourceUtilization(BaseModel):
    cpu: float = 0.0
    memory: float = 0.0
    disk: float = 0.0


class SystemStats(BaseModel):
    total_agents: int = 0
    active_agents: int = 0
    healthy_agents: int = 0
    average_health: float = 1.0
    pools: int = 0
    resource_utilization: ResourceUtilization = Field(default_factory=ResourceUtilization)
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)
    total_workload: int = 0
    total_restarts: int = 0
    pool_utilization: Dict[str, float] = Field(default_factory=dict)


class StopResult(BaseModel):
    agent_id: str
    status: AgentStatus
    reason: str
    forced: bool = False
    escalated: bool = False
    aborted_tasks: List[str] = Field(default_factory=list)
    drain_seconds: float = 0.0
    preserved_key: Optional[str] = None
    removed: bool = False
    warnings: List[str] = Field(default_factory=list)
