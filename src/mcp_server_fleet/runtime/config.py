"""
Fleet configuration.

Zero-config by default: every tunable has a default here. Progressive
enhancement comes from ``<data_dir>/config/fleet.yaml`` (or the file named
by FLEET_CONFIG) and finally from FLEET_* environment variables.
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger("fleet.config")

ENV_PREFIX = "FLEET_"


class HealthWeights(BaseModel):
    responsiveness: float = Field(default=1.0, ge=0.0)
    performance: float = Field(default=1.0, ge=0.0)
    reliability: float = Field(default=1.0, ge=0.0)
    resource_usage: float = Field(default=1.0, ge=0.0)

    @model_validator(mode="after")
    def _not_all_zero(self):
        if self.responsiveness + self.performance + self.reliability + self.resource_usage <= 0:
            raise ValueError("At least one health weight must be positive")
        return self


class FleetSettings(BaseModel):
    """All tunables of the fleet manager."""

    data_dir: Path = Field(default=Path(".fleet"), description="Root for archives, locks and config")
    templates_file: Optional[Path] = Field(default=None, description="YAML file with extra agent templates")
    watch_templates: bool = False

    # Termination
    drain_timeout: float = Field(default=30.0, gt=0, description="Seconds a graceful stop waits for workload to drain")

    # Heartbeats
    heartbeat_interval: float = Field(default=15.0, gt=0)
    heartbeat_stale_after: float = Field(default=60.0, gt=0)

    # Health model
    health_interval: float = Field(default=10.0, gt=0)
    health_weights: HealthWeights = Field(default_factory=HealthWeights)
    throughput_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    throughput_window: float = Field(default=60.0, gt=0, description="Seconds of completions counted as recent")
    failure_half_life: float = Field(default=600.0, gt=0, description="Seconds for a failure to lose half its weight")
    trend_window: int = Field(default=10, ge=2)
    trend_threshold: float = Field(default=0.01, ge=0.0)
    issue_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    healthy_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    metrics_timeout: float = Field(default=2.0, gt=0)

    # Pools
    retire_health_floor: float = Field(default=0.3, ge=0.0, le=1.0)
    replace_retired: bool = True
    autoscale_interval: float = Field(default=5.0, gt=0)
    autoscale_step: int = Field(default=1, ge=1)
    scale_up_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    scale_down_threshold: float = Field(default=0.3, ge=0.0, lt=1.0)

    # Preservation
    store_timeout: float = Field(default=5.0, gt=0)

    # Logs
    agent_log_size: int = Field(default=200, ge=1)
    log_level: str = "WARNING"

    @model_validator(mode="after")
    def _check_hysteresis(self):
        if self.scale_up_threshold <= self.scale_down_threshold:
            raise ValueError(
                f"scale_up_threshold ({self.scale_up_threshold}) must exceed "
                f"scale_down_threshold ({self.scale_down_threshold})"
            )
        return self

    @property
    def archive_dir(self) -> Path:
        return self.data_dir / "archive"

    @property
    def lock_dir(self) -> Path:
        return self.data_dir / ".locks"


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    # Allow both a bare mapping and a `fleet:` section
    return data.get("fleet", data)


def _env_overrides(environ) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    fields = FleetSettings.model_fields
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or key == f"{ENV_PREFIX}CONFIG":
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in fields and name != "health_weights":
            overrides[name] = value
    return overrides


def load_settings(config_path: Optional[Path] = None, environ=None, **overrides) -> FleetSettings:
    """
    Build settings from defaults, YAML, environment and explicit overrides
    (in increasing precedence).
    """
    environ = os.environ if environ is None else environ

    data_dir = Path(overrides.get("data_dir") or environ.get(f"{ENV_PREFIX}DATA_DIR", ".fleet"))
    if config_path is None:
        env_path = environ.get(f"{ENV_PREFIX}CONFIG")
        config_path = Path(env_path) if env_path else data_dir / "config" / "fleet.yaml"

    values: Dict[str, Any] = {}
    file_values = _read_yaml(Path(config_path))
    if file_values:
        logger.info(f"Loaded fleet config from {config_path}")
    values.update(file_values)
    values.update(_env_overrides(environ))
    values.update(overrides)
    return FleetSettings.model_validate(values)
