"""
StatePreservation - archive terminated agents into the key-value store.

Records are written once under ``agent_state:<id>:<instance>`` and carry
enough of the agent (template, config, environment) to recreate an
equivalent one later.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import PersistenceFailure
from .models import Agent, AgentOptions, now_ms
from .store import KeyValueStore

logger = logging.getLogger("fleet.preservation")

RECORD_TYPE = "preserved-agent-state"
RECORD_TAGS = ["terminated", "preserved"]
RECORD_PARTITION = "archived"


def state_key(agent_id: str, instance: int) -> str:
    return f"agent_state:{agent_id}:{instance}"


class PreservedAgentState(BaseModel):
    agent: Agent
    termination_time: int = Field(default_factory=now_ms)
    reason: str = "user_request"
    preserved_by: str = "fleet-manager"

    @property
    def key(self) -> str:
        return state_key(self.agent.id.id, self.agent.id.instance)

    def to_create_request(self) -> Dict[str, Any]:
        """Arguments for ``create_agent`` that rebuild an equivalent agent."""
        return {
            "template": self.agent.template,
            "options": AgentOptions(
                name=self.agent.name,
                config=self.agent.config.model_dump(),
                environment=self.agent.environment.model_dump(),
            ),
        }


class StatePreservation:
    def __init__(self, store: KeyValueStore, timeout: float = 5.0, preserved_by: str = "fleet-manager"):
        self.store = store
        self.timeout = timeout
        self.preserved_by = preserved_by
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="fleet-archive")

    def preserve(self, agent: Agent, reason: str, preserved_by: Optional[str] = None) -> str:
        """
        Archive a terminated agent snapshot. Returns the storage key.

        Raises:
            PersistenceFailure: store error, duplicate key or timeout
        """
        record = PreservedAgentState(agent=agent, reason=reason, preserved_by=preserved_by or self.preserved_by)
        key = record.key
        metadata = {"type": RECORD_TYPE, "tags": list(RECORD_TAGS), "partition": RECORD_PARTITION}

        future = self._executor.submit(self.store.store, key, record.model_dump(mode="json"), metadata)
        try:
            future.result(timeout=self.timeout)
        except FuturesTimeout:
            future.cancel()
            raise PersistenceFailure(f"Archiving {key} timed out after {self.timeout}s", subject=key) from None
        except Exception as e:
            raise PersistenceFailure(f"Archiving {key} failed: {e}", subject=key) from e

        logger.info(f"💾 Preserved agent state {key}")
        return key

    def load(self, agent_id: str, instance: int = 1) -> Optional[PreservedAgentState]:
        entry = self.store.get(state_key(agent_id, instance))
        if entry is None:
            return None
        return PreservedAgentState.model_validate(entry.value)

    def list_preserved(self) -> List[str]:
        return self.store.keys(tag="preserved")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
