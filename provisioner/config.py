"""
Provisioner configuration.

Two layers:

1. EngineSettings — tunables of the decision engine, pydantic settings with
   environment variable support (prefix PROVISIONER__):

       PROVISIONER__MAX_NODE_VCPU=16
       PROVISIONER__MAX_NODE_MEMORY_GIB=64
       PROVISIONER__UNDERUTILIZATION_THRESHOLD=0.5
       PROVISIONER__LAUNCH_TIMEOUT=300          # seconds, or "5m"
       PROVISIONER__DRAIN_GRACE_PERIOD=600
       PROVISIONER__INTERRUPTION_GRACE_PERIOD=120
       PROVISIONER__MAX_CONSECUTIVE_RETRIES=3
       PROVISIONER__REQUIRE_SINGLE_DEMAND_FIT=false

2. ProvisionerConfig — the policy set (instance catalog + node pools), read
   from a YAML file at process start:

       engine:
         max_node_vcpu: 8
       catalog:            # optional, defaults to the built-in table
         - name: m6i.large
           family: m6i
           architecture: amd64
           vcpu: 2
           memory_gib: 8
       pools:
         - name: x86
           architecture: amd64
           capacity_type: on-demand
           allowed_families: [m6i, c6i]
           limits: {cpu: 1000, memory_gib: 1000}
           disruption:
             policy: WhenEmptyOrUnderutilized
             consolidate_after: 1m
             budget_percent: "10%"

Invalid YAML, schema errors and policy errors all propagate: the process
refuses to start with an invalid policy set.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from provisioner.shared.models import InstanceShape, NodePool, parse_duration

logger = logging.getLogger(__name__)


class EngineSettings(BaseSettings):
    """
    Decision-engine tunables.

    Environment variables:
        PROVISIONER__MAX_NODE_VCPU - Largest per-node chunk the planner aims for
        PROVISIONER__MAX_NODE_MEMORY_GIB - Same, memory dimension
        PROVISIONER__UNDERUTILIZATION_THRESHOLD - cpu AND mem fraction below which a node is underutilised
        PROVISIONER__LAUNCH_TIMEOUT - Unconfirmed launches revert to Deferred after this
        PROVISIONER__DRAIN_GRACE_PERIOD - Voluntary drain deadline
        PROVISIONER__INTERRUPTION_GRACE_PERIOD - Fallback deadline for interruption notices
        PROVISIONER__MAX_CONSECUTIVE_RETRIES - Retries before an operator alert
        PROVISIONER__REQUIRE_SINGLE_DEMAND_FIT - Only pick shapes that fit the largest single demand
    """

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONER__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_node_vcpu: int = Field(default=16, gt=0)
    max_node_memory_gib: float = Field(default=64.0, gt=0)
    underutilization_threshold: float = Field(default=0.5, gt=0.0, le=1.0)
    launch_timeout: timedelta = Field(default=timedelta(minutes=5))
    drain_grace_period: timedelta = Field(default=timedelta(minutes=10))
    interruption_grace_period: timedelta = Field(default=timedelta(minutes=2))
    max_consecutive_retries: int = Field(default=3, ge=1)
    require_single_demand_fit: bool = Field(
        default=False,
        description="When true, shapes smaller than the largest single demand in a group are skipped",
    )

    @field_validator(
        "launch_timeout", "drain_grace_period", "interruption_grace_period", mode="before"
    )
    @classmethod
    def parse_durations(cls, value: object) -> object:
        return parse_duration(value)


class ProvisionerConfig(BaseModel):
    """Policy set loaded at startup."""

    engine: EngineSettings = Field(default_factory=EngineSettings)
    catalog: Optional[List[InstanceShape]] = Field(
        default=None,
        description="Instance shapes. None = built-in default catalog.",
    )
    pools: List[NodePool] = Field(default_factory=list)


def load_config(path: Union[str, Path]) -> ProvisionerConfig:
    """
    Read and validate a YAML policy file.

    Raises:
        FileNotFoundError: path does not exist.
        yaml.YAMLError: malformed YAML.
        pydantic.ValidationError: schema violations (unknown architecture
                                  string, negative limits, ...).
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    config = ProvisionerConfig.model_validate(raw)
    logger.info(
        "Loaded provisioner config from %s: %d pool(s), %s catalog",
        path,
        len(config.pools),
        f"{len(config.catalog)}-shape" if config.catalog is not None else "default",
    )
    return config
