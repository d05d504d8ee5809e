"""
BudgetPilot configuration management.

Supports loading from YAML files, environment variables, and keyword overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field


class PersistenceConfig(BaseModel):
    """Where the ledger lives."""

    backend: str = Field(default="memory", description="memory, http, or a dotted class path")
    base_url: str | None = Field(default=None, description="Ledger service API root (http backend)")
    api_token: str | None = Field(default=None, description="Bearer token (or set env var)")
    timeout: float = Field(default=30.0, gt=0, description="HTTP client timeout in seconds")
    options: dict[str, Any] = Field(default_factory=dict)


class CoordinatorConfig(BaseModel):
    """Optimistic mutation settings."""

    single_flight: Literal["reject", "queue"] = Field(
        default="reject",
        description="What a second mutation on a busy entity does: fail fast or wait its turn",
    )
    write_timeout: float = Field(default=15.0, gt=0, description="Seconds before a write counts as failed")
    read_timeout: float = Field(default=10.0, gt=0, description="Seconds before a refetch counts as failed")


class PollingConfig(BaseModel):
    """Background refresh of loaded aggregates."""

    enabled: bool = False
    interval_seconds: float = Field(default=30.0, gt=0)
    timeout: float = Field(default=10.0, gt=0)


class ApprovalConfig(BaseModel):
    """Approval workflow rules."""

    require_rejection_reason: bool = True
    block_regression_with_transactions: bool = Field(
        default=False,
        description="Refuse to move an Approved request with transactions back to Pending/Rejected",
    )


class BudgetPilotConfig(BaseModel):
    """Root configuration for BudgetPilot."""

    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)

    currency: str = Field(default="USD")
    log_level: str = Field(default="INFO")

    @classmethod
    def load(cls, config_path: str | None = None, **overrides: Any) -> BudgetPilotConfig:
        """Load configuration from file, env vars, and overrides.

        Priority: overrides > env vars > config file > defaults.
        """
        data: dict[str, Any] = {}

        # 1. Load from YAML file if provided
        if config_path:
            path = Path(config_path)
            if path.exists():
                with open(path) as f:
                    data = yaml.safe_load(f) or {}

        # 2. Override from environment variables
        env_backend = os.environ.get("BUDGETPILOT_BACKEND")
        env_url = os.environ.get("BUDGETPILOT_BASE_URL")
        env_token = os.environ.get("BUDGETPILOT_API_TOKEN")
        env_single_flight = os.environ.get("BUDGETPILOT_SINGLE_FLIGHT")

        if env_backend or env_url or env_token:
            persistence = data.get("persistence", {})
            if env_backend:
                persistence["backend"] = env_backend
            if env_url:
                persistence["base_url"] = env_url
            if env_token:
                persistence["api_token"] = env_token
            data["persistence"] = persistence

        if env_single_flight:
            coordinator = data.get("coordinator", {})
            coordinator["single_flight"] = env_single_flight.lower()
            data["coordinator"] = coordinator

        # 3. Apply keyword overrides
        data.update(overrides)

        return cls.model_validate(data)
