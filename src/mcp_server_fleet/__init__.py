
# =============================================================================
# Agent Fleet & Pool Manager v0.1.0
# =============================================================================
__version__ = "0.1.0"

from .runtime.config import FleetSettings, load_settings
from .runtime.errors import (
    DrainTimeout,
    FleetError,
    InsufficientCapacity,
    InvalidPoolSize,
    InvalidTransition,
    NotFound,
    PersistenceFailure,
    PoolExhausted,
    TemplateNotFound,
)
from .runtime.manager import AgentManager
from .runtime.models import AgentOptions, AgentStatus, AgentType, MetricsSample, PoolConfig

__all__ = [
    "__version__",
    "AgentManager",
    "AgentOptions",
    "AgentStatus",
    "AgentType",
    "DrainTimeout",
    "FleetError",
    "FleetSettings",
    "InsufficientCapacity",
    "InvalidPoolSize",
    "InvalidTransition",
    "MetricsSample",
    "NotFound",
    "PersistenceFailure",
    "PoolConfig",
    "PoolExhausted",
    "TemplateNotFound",
    "load_settings",
]
