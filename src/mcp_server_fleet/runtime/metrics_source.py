"""
Metrics sources feeding the health monitor.

A MetricsSource supplies raw cpu/memory/disk/response-time readings for
an agent. The monitor calls it with a time bound; ``None`` means "no new
reading", in which case the agent's last known metrics are reused.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from .models import Agent, MetricsSample


class MetricsSource(ABC):
    @abstractmethod
    def sample(self, agent: Agent) -> Optional[MetricsSample]:
        """Return a fresh reading for ``agent`` or None."""


class ReportedMetricsSource(MetricsSource):
    """Holds the latest reading pushed by each agent (or its supervisor)."""

    def __init__(self):
        self._latest: Dict[str, MetricsSample] = {}
        self._lock = threading.Lock()

    def report(self, agent_id: str, sample: MetricsSample) -> None:
        with self._lock:
            self._latest[agent_id] = sample

    def forget(self, agent_id: str) -> None:
        with self._lock:
            self._latest.pop(agent_id, None)

    def sample(self, agent: Agent) -> Optional[MetricsSample]:
        with self._lock:
            reading = self._latest.get(agent.id.id)
        return reading.model_copy() if reading else None
