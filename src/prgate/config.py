"""Configuration loading for prgate.

Reads .prgate/config.yaml. Pydantic models validate the schema; policy
rules are turned into an immutable resolver by :mod:`prgate.policy`.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str = "prgate"
    owner: str = ""  # GitHub org/user, e.g. "acme"
    repo: str = ""  # GitHub repo name, e.g. "terraform-modules"
    bot_username: str = "prgate[bot]"  # reviews by this login never count toward the gate

    @property
    def full_name(self) -> str | None:
        if self.owner and self.repo:
            return f"{self.owner}/{self.repo}"
        return None


class PolicyRule(BaseModel):
    """Maps a branch + path pattern to reviewers and workflows.

    Examples:
        - {branch_pattern: "main", path_pattern: "modules/**", reviewers: [alice]}
        - {path_pattern: "modules/network/**", required_approvals: 2,
           workflows: [terraform-plan.yml], exclusive: true}
    """

    name: str = ""
    repository_pattern: str = "*"  # owner/repo glob
    branch_pattern: str = "*"  # matched against the PR's target branch
    path_pattern: str = "**"
    reviewers: list[str] = Field(default_factory=list)
    required_approvals: int = Field(default=1, ge=0)
    workflows: list[str] = Field(default_factory=list)
    exclusive: bool = False  # drop less specific rules for the paths this rule matches

    @field_validator("path_pattern")
    @classmethod
    def _strip_leading_slash(cls, v: str) -> str:
        return v.lstrip("/") or "**"

    @field_validator("reviewers")
    @classmethod
    def _strip_at(cls, v: list[str]) -> list[str]:
        # "@alice" and "alice" name the same login
        return [r.lstrip("@") for r in v if r.strip()]


class PolicyDefaults(BaseModel):
    """Applied when no rule matches a PR."""

    reviewers: list[str] = Field(default_factory=list)
    required_approvals: int = Field(default=1, ge=0)
    workflows: list[str] = Field(default_factory=list)


class PolicyConfig(BaseModel):
    rules: list[PolicyRule] = Field(default_factory=list)
    defaults: PolicyDefaults = Field(default_factory=PolicyDefaults)
    dismiss_stale_approvals: bool = True  # only approvals on the current revision count
    max_workflow_attempts: int = Field(default=1, ge=1)  # >1 re-dispatches failed workflows


class DispatchConfig(BaseModel):
    enabled: bool = True
    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = 1.0  # seconds; doubles per attempt
    max_delay: float = 16.0


class GateConfig(BaseModel):
    publish_status: bool = True  # post the decision as a commit status
    status_context: str = "prgate/merge-gate"


class RuntimeConfig(BaseModel):
    reconciliation_interval: int = 300  # seconds
    event_retention_hours: int = 72
    webhook_rate_limit: int = 60  # deliveries per minute, 0 = unlimited
    recover_on_startup: bool = True


class PRGateConfig(BaseModel):
    """Top-level configuration (matches .prgate/config.yaml)."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)


def load_config(config_dir: Path) -> PRGateConfig:
    """Load prgate configuration from a .prgate/ directory.

    Args:
        config_dir: Path to the .prgate/ directory.

    Returns:
        Validated PRGateConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ValueError: If config validation fails.
    """
    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"prgate config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = PRGateConfig(**raw)

    # Environment variable overrides for deployment
    owner = os.environ.get("PRGATE_REPO_OWNER")
    if owner:
        config.project.owner = owner
    repo = os.environ.get("PRGATE_REPO_NAME")
    if repo:
        config.project.repo = repo

    dispatch_enabled = os.environ.get("PRGATE_DISPATCH_ENABLED")
    if dispatch_enabled is not None:
        config.dispatch.enabled = dispatch_enabled.lower() in ("1", "true", "yes")

    logger.info(
        "Loaded prgate config: project=%s, %d policy rules",
        config.project.name,
        len(config.policy.rules),
    )
    return config
