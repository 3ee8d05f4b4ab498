"""
Self-Healing Engine - Configuration
===================================
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache
from enum import Enum

from healing_shared.constants import Defaults, Timing
from healing_shared.schemas.actions import SafetyPolicy


class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Application settings."""

    service_name: str = Field(default="self-healing-engine")
    service_version: str = Field(default="0.1.0")
    environment: Environment = Field(default=Environment.DEVELOPMENT)

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8020)
    debug: bool = Field(default=False)

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    # Collaborating services
    pattern_store_url: str = Field(
        default="",
        description="Activity service URL; empty uses the in-memory pattern store"
    )

    # Default safety policy
    max_actions_per_hour: int = Field(default=Defaults.MAX_ACTIONS_PER_HOUR)
    max_concurrent_executions: int = Field(default=Defaults.MAX_CONCURRENT_EXECUTIONS)
    max_affected_entities: int = Field(default=Defaults.MAX_AFFECTED_ENTITIES)
    min_action_cooldown_minutes: int = Field(default=Defaults.MIN_ACTION_COOLDOWN_MINUTES)
    require_approval_types: list[str] = Field(default_factory=lambda: ["redistribute"])
    require_approval_severities: list[str] = Field(default_factory=lambda: ["critical"])
    blocked_hours: list[int] = Field(default_factory=list)
    blocked_days: list[int] = Field(default_factory=list)
    dry_run_mode: bool = Field(
        default=False,
        description="Force every execution to run as a dry run"
    )

    # Execution
    execution_timeout_ms: int = Field(
        default=Defaults.EXECUTION_TIMEOUT_MS,
        description="Per-execution timeout when the action does not set one"
    )
    webhook_timeout_seconds: float = Field(default=10.0)

    # Approvals
    approval_expiration_hours: float = Field(default=Defaults.APPROVAL_EXPIRATION_HOURS)
    approval_escalate_after_hours: float = Field(default=Defaults.APPROVAL_ESCALATE_AFTER_HOURS)
    approver_roles: list[str] = Field(default_factory=lambda: ["admin"])
    approval_notify_on_expiration: bool = Field(default=True)
    approval_auto_approve_low_priority_hours: float = Field(
        default=Defaults.APPROVAL_AUTO_APPROVE_LOW_PRIORITY_HOURS,
        ge=0,
        description="Hours before an open low-priority request is approved by the system; 0 disables"
    )

    # Job runner
    pattern_scan_concurrency: int = Field(default=2)
    action_execution_concurrency: int = Field(default=5)
    approval_maintenance_concurrency: int = Field(default=1)
    learning_analysis_concurrency: int = Field(default=1)
    job_max_attempts: int = Field(default=3)
    job_retry_base_delay_seconds: float = Field(default=1.0)
    job_retry_max_delay_seconds: float = Field(default=60.0)
    job_results_limit: int = Field(default=1000, ge=1, description="Finished job results kept in memory")

    # Recurring schedule
    scheduler_enabled: bool = Field(default=False)
    scheduled_organizations: list[str] = Field(default_factory=list)
    pattern_scan_interval_seconds: int = Field(default=Timing.PATTERN_SCAN_INTERVAL_SECONDS)
    approval_maintenance_interval_seconds: int = Field(
        default=Timing.APPROVAL_MAINTENANCE_INTERVAL_SECONDS
    )
    learning_analysis_interval_seconds: int = Field(
        default=Timing.LEARNING_ANALYSIS_INTERVAL_SECONDS
    )
    scan_window_minutes: int = Field(default=Timing.DEFAULT_SCAN_WINDOW_MINUTES)
    auto_execute: bool = Field(default=False)

    # Learning
    learning_min_occurrences: int = Field(default=5)
    learning_min_success_rate: float = Field(default=0.7)
    learning_confidence_threshold: float = Field(default=0.6)
    learning_window_days: int = Field(default=30)

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def default_policy(self) -> SafetyPolicy:
        """Safety policy applied to organizations without an override."""
        return SafetyPolicy(
            max_actions_per_hour=self.max_actions_per_hour,
            max_concurrent_executions=self.max_concurrent_executions,
            max_affected_entities=self.max_affected_entities,
            min_action_cooldown_minutes=self.min_action_cooldown_minutes,
            require_approval_types=self.require_approval_types,
            require_approval_severities=self.require_approval_severities,
            blocked_hours=self.blocked_hours,
            blocked_days=self.blocked_days,
            dry_run_mode=self.dry_run_mode,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
