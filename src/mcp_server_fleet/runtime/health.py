"""
HealthMonitor - composite health scoring for agents.

Each sampling cycle turns an agent's latest metrics into four component
scores in [0, 1]:

- responsiveness: 1 - response_time / timeout_threshold
- performance:    success_rate x (1 - w + w x throughput_ratio)
- reliability:    1 - exponentially decayed failure rate over task history
- resource_usage: 1 - mean(cpu, memory / max_memory)

The overall score is their weighted average. A rolling window of overall
scores gives the trend (least-squares slope), and components below the
issue threshold become graded issues with a recommended action.
"""

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Deque, Dict, List, Optional, Sequence

from .config import FleetSettings
from .errors import NotFound
from .lifecycle import TERMINAL_STATUSES
from .metrics_source import MetricsSource, ReportedMetricsSource
from .models import (
    Agent,
    HealthComponents,
    HealthIssue,
    HealthReport,
    HealthTrend,
    IssueSeverity,
    MetricsSample,
    TaskOutcome,
    now_ms,
)
from .registry import AgentRegistry

logger = logging.getLogger("fleet.health")

COMPONENTS = ("responsiveness", "performance", "reliability", "resource_usage")

SEVERITY_RANK = {
    IssueSeverity.CRITICAL: 0,
    IssueSeverity.HIGH: 1,
    IssueSeverity.MEDIUM: 2,
    IssueSeverity.LOW: 3,
}


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def severity_for(distance: float) -> IssueSeverity:
    """Grade how far a component sits below the issue threshold."""
    if distance < 0.1:
        return IssueSeverity.LOW
    if distance < 0.25:
        return IssueSeverity.MEDIUM
    if distance < 0.45:
        return IssueSeverity.HIGH
    return IssueSeverity.CRITICAL


def trend_of(scores: Sequence[float], threshold: float = 0.01) -> HealthTrend:
    """Least-squares slope of the scores against their sample index."""
    n = len(scores)
    if n < 3:
        return HealthTrend.STABLE
    mean_x = (n - 1) / 2
    mean_y = sum(scores) / n
    num = sum((i - mean_x) * (y - mean_y) for i, y in enumerate(scores))
    den = sum((i - mean_x) ** 2 for i in range(n))
    slope = num / den
    if slope > threshold:
        return HealthTrend.IMPROVING
    if slope < -threshold:
        return HealthTrend.DEGRADING
    return HealthTrend.STABLE


class HealthMonitor:
    """Samples agent metrics into health reports and writes scores back to the registry."""

    def __init__(
        self,
        registry: AgentRegistry,
        source: Optional[MetricsSource] = None,
        settings: Optional[FleetSettings] = None,
    ):
        self.registry = registry
        self.source = source or ReportedMetricsSource()
        self.settings = settings or FleetSettings()

        self._reports: Dict[str, HealthReport] = {}
        self._history: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="fleet-metrics")

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def compute_components(self, agent: Agent, at: Optional[int] = None) -> HealthComponents:
        at = at or now_ms()
        m = agent.metrics
        s = self.settings

        responsiveness = _clamp(1 - m.response_time / agent.config.timeout_threshold)

        finished = [t for t in agent.task_history if t.status in (TaskOutcome.COMPLETED, TaskOutcome.FAILED)]
        if finished:
            window_start = at - s.throughput_window * 1000
            recent = sum(
                1 for t in finished
                if t.status == TaskOutcome.COMPLETED and (t.finished_at or 0) >= window_start
            )
            throughput_ratio = min(1.0, recent / agent.config.max_concurrent_tasks)
        else:
            throughput_ratio = 1.0
        w = s.throughput_weight
        performance = _clamp(m.success_rate * (1 - w + w * throughput_ratio))

        weighted_total = 0.0
        weighted_failures = 0.0
        for task in finished:
            age = max(0.0, (at - (task.finished_at or at)) / 1000)
            weight = 2 ** (-age / s.failure_half_life)
            weighted_total += weight
            if task.status == TaskOutcome.FAILED:
                weighted_failures += weight
        reliability = _clamp(1 - weighted_failures / weighted_total) if weighted_total else 1.0

        memory_ratio = m.memory_usage / agent.environment.max_memory_usage
        resource_usage = _clamp(1 - (m.cpu_usage + memory_ratio) / 2)

        return HealthComponents(
            responsiveness=responsiveness,
            performance=performance,
            reliability=reliability,
            resource_usage=resource_usage,
        )

    def overall(self, components: HealthComponents) -> float:
        weights = self.settings.health_weights
        total = 0.0
        weight_sum = 0.0
        for name in COMPONENTS:
            weight = getattr(weights, name)
            total += weight * getattr(components, name)
            weight_sum += weight
        return _clamp(total / weight_sum)

    def issues_for(self, agent: Agent, components: HealthComponents) -> List[HealthIssue]:
        threshold = self.settings.issue_threshold
        issues = []
        for name in COMPONENTS:
            score = getattr(components, name)
            if score >= threshold:
                continue
            message, action = self._describe(name, agent)
            issues.append(HealthIssue(
                severity=severity_for(threshold - score),
                component=name,
                message=f"{message} (score {score:.2f})",
                recommended_action=action,
            ))
        issues.sort(key=lambda i: SEVERITY_RANK[i.severity])
        return issues

    @staticmethod
    def _describe(component: str, agent: Agent):
        m = agent.metrics
        if component == "responsiveness":
            return (
                f"Response time {m.response_time:.0f}ms is close to the "
                f"{agent.config.timeout_threshold}ms timeout",
                "Reduce concurrent load on the agent or raise timeout_threshold",
            )
        if component == "performance":
            return (
                f"Success rate {m.success_rate:.0%} with low recent throughput",
                "Inspect recently failed tasks and the agent's configuration",
            )
        if component == "reliability":
            return (
                f"Recent task failures are elevated ({m.tasks_failed} failed in total)",
                "Review the failing tasks and restart the agent if failures persist",
            )
        memory_pct = m.memory_usage / agent.environment.max_memory_usage
        return (
            f"High resource usage (cpu {m.cpu_usage:.0%}, memory {memory_pct:.0%} of limit)",
            "Scale out the pool or raise max_memory_usage",
        )

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def sample_health(self, agent: Agent, sample: Optional[MetricsSample] = None) -> HealthReport:
        """
        Score one agent. ``sample`` overrides the agent's last known resource
        readings; without it the snapshot's metrics are used as-is.
        """
        if sample is not None:
            agent = agent.snapshot()
            agent.metrics.cpu_usage = sample.cpu_usage
            agent.metrics.memory_usage = sample.memory_usage
            agent.metrics.disk_usage = sample.disk_usage
            agent.metrics.response_time = sample.response_time

        components = self.compute_components(agent)
        overall = self.overall(components)
        agent_id = agent.id.id

        with self._lock:
            history = self._history.setdefault(agent_id, deque(maxlen=self.settings.trend_window))
            history.append(overall)
            trend = trend_of(list(history), self.settings.trend_threshold)
            report = HealthReport(
                agent_id=agent_id,
                overall=overall,
                components=components,
                trend=trend,
                issues=self.issues_for(agent, components),
            )
            self._reports[agent_id] = report

        self.registry.record_health(agent_id, overall)
        if trend == HealthTrend.DEGRADING:
            logger.warning(f"📉 Agent {agent_id} health degrading (overall {overall:.2f})")
        return report.model_copy(deep=True)

    def fetch_sample(self, agent: Agent) -> Optional[MetricsSample]:
        """Ask the metrics source for a reading, bounded by ``metrics_timeout``."""
        future = self._executor.submit(self.source.sample, agent)
        try:
            return future.result(timeout=self.settings.metrics_timeout)
        except FuturesTimeout:
            future.cancel()
            logger.warning(
                f"⏱️ Metrics sample for {agent.id.id} timed out after "
                f"{self.settings.metrics_timeout}s; using last known metrics"
            )
        except Exception as e:
            logger.warning(f"Metrics sample for {agent.id.id} failed: {e}; using last known metrics")
        return None

    def sample_all(self) -> List[HealthReport]:
        """One sampling cycle over every non-terminal agent."""
        reports = []
        for agent in self.registry.get_all_agents():
            if agent.status in TERMINAL_STATUSES:
                continue
            sample = self.fetch_sample(agent)
            try:
                if sample is not None:
                    self.registry.record_metrics(agent.id.id, sample)
                reports.append(self.sample_health(agent, sample))
            except NotFound:
                # Removed between listing and scoring
                self.forget(agent.id.id)
        logger.debug(f"Health cycle complete ({len(reports)} agents)")
        return reports

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_report(self, agent_id: str) -> HealthReport:
        """Latest report; computed on demand if the agent was never sampled."""
        with self._lock:
            report = self._reports.get(agent_id)
        if report is not None:
            return report.model_copy(deep=True)
        return self.sample_health(self.registry.require_agent(agent_id))

    def latest_reports(self) -> Dict[str, HealthReport]:
        with self._lock:
            return {k: v.model_copy(deep=True) for k, v in self._reports.items()}

    def forget(self, agent_id: str) -> None:
        with self._lock:
            self._reports.pop(agent_id, None)
            self._history.pop(agent_id, None)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
