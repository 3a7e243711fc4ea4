"""Configuration settings for the Content Coordinator."""
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BatchStrategy(str, Enum):
    """How a category turns backlog depth into a batch size."""
    GENERATION = "generation"    # expensive items, batch = backlog / divisor
    LIGHTWEIGHT = "lightweight"  # cheap items, batch = backlog
    SINGLE = "single"            # always one unit of work


class CategoryConfig(BaseModel):
    """Static profile of one category of generation work."""

    model_config = ConfigDict(frozen=True)

    category_id: str
    base_interval_minutes: int = Field(gt=0)
    base_priority: int = Field(ge=0, le=100)
    max_batch_size: int = Field(gt=0)
    min_batch_size: int = Field(default=1, ge=1)
    batch_strategy: BatchStrategy = BatchStrategy.GENERATION
    backlog_divisor: int = Field(default=5, gt=0)
    cost_per_item: float = Field(ge=0)
    estimated_duration_ms: int = Field(gt=0)
    success_rate_floor: float = Field(ge=0, le=1)
    queue_task_type: Optional[str] = None

    # Resource footprint
    resource_pools: tuple[str, ...] = ()
    memory_mb: int = Field(default=256, ge=0)
    calls_per_item: int = Field(default=1, ge=0)
    fixed_calls: Optional[int] = None
    connections: int = Field(default=1, ge=0)

    # Aggregator categories summarize the output of these categories
    depends_on: tuple[str, ...] = ()

    @property
    def is_aggregator(self) -> bool:
        return bool(self.depends_on)

    def calls_for(self, batch_size: int) -> int:
        """External calls needed for a batch of this category."""
        if self.fixed_calls is not None:
            return self.fixed_calls
        return batch_size * self.calls_per_item


DEFAULT_CATEGORIES: tuple[CategoryConfig, ...] = (
    CategoryConfig(
        category_id="content_pipeline",
        base_interval_minutes=15,
        base_priority=90,
        max_batch_size=10,
        batch_strategy=BatchStrategy.GENERATION,
        backlog_divisor=5,
        cost_per_item=0.15,
        estimated_duration_ms=180_000,
        success_rate_floor=0.85,
        queue_task_type="content_generation",
        resource_pools=("external_calls", "budget", "memory", "connections"),
        memory_mb=512,
        calls_per_item=3,
    ),
    CategoryConfig(
        category_id="seo_monitor",
        base_interval_minutes=120,
        base_priority=60,
        max_batch_size=20,
        min_batch_size=5,
        batch_strategy=BatchStrategy.LIGHTWEIGHT,
        cost_per_item=0.05,
        estimated_duration_ms=120_000,
        success_rate_floor=0.90,
        queue_task_type="seo_analysis",
        resource_pools=("external_calls", "budget", "connections"),
        memory_mb=256,
        calls_per_item=1,
    ),
    CategoryConfig(
        category_id="revenue_optimizer",
        base_interval_minutes=240,
        base_priority=50,
        max_batch_size=50,
        min_batch_size=10,
        batch_strategy=BatchStrategy.LIGHTWEIGHT,
        cost_per_item=0.10,
        estimated_duration_ms=90_000,
        success_rate_floor=0.95,
        queue_task_type="revenue_optimization",
        resource_pools=("budget", "memory"),
        memory_mb=128,
        calls_per_item=2,
    ),
    CategoryConfig(
        category_id="intelligence_engine",
        base_interval_minutes=60,
        base_priority=40,
        max_batch_size=1,
        batch_strategy=BatchStrategy.SINGLE,
        cost_per_item=0.25,
        estimated_duration_ms=240_000,
        success_rate_floor=0.98,
        queue_task_type="intelligence_analysis",
        resource_pools=("external_calls", "budget", "memory"),
        memory_mb=1024,
        fixed_calls=5,
        depends_on=("content_pipeline", "seo_monitor", "revenue_optimizer"),
    ),
)


class CoordinatorSettings(BaseSettings):
    """Coordinator settings loaded once from the environment.

    Instances are frozen; load them with ``load_settings`` and pass them
    explicitly to every component.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONTENT_COORDINATOR_",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    # Storage
    db_path: str = str(Path.home() / ".content-coordinator" / "coordinator.db")

    # Health gate
    max_concurrent_executions: int = Field(default=3, gt=0)
    failure_window_minutes: int = Field(default=60, gt=0)
    max_recent_failures: int = Field(default=5, ge=0)
    queue_depth_warning: int = 1000
    avg_latency_warning_ms: float = 300_000

    # Resource pool capacities
    daily_budget: float = Field(default=300.0, gt=0)
    external_call_quota: int = Field(default=60, gt=0)
    memory_ceiling_mb: int = Field(default=2048, gt=0)
    connection_ceiling: int = Field(default=20, gt=0)
    budget_burst: float = Field(default=0.0, ge=0)
    external_call_burst: int = Field(default=0, ge=0)
    memory_burst_mb: int = Field(default=0, ge=0)
    connection_burst: int = Field(default=0, ge=0)
    # Accounting windows for consumed resources
    budget_window_seconds: int = Field(default=86_400, gt=0)
    external_call_window_seconds: int = Field(default=60, gt=0)

    # Pool status thresholds
    warning_utilization: float = 0.70
    critical_utilization: float = 0.90
    unavailable_error_threshold: int = Field(default=5, ge=1)
    # Tripped pools admit work again once this long has passed since the last error
    pool_error_cooldown_seconds: int = Field(default=900, gt=0)

    # Work queue
    lock_duration_minutes: int = Field(default=30, gt=0)
    max_retries: int = Field(default=3, ge=1)
    backoff_schedule_seconds: tuple[int, ...] = (300, 3600)
    starvation_age_minutes: int = 30

    # Scheduling and planning
    dispatch_threshold: int = 60
    success_window_hours: int = 24
    history_window_days: int = 7
    tick_period_seconds: int = Field(default=300, gt=0)
    start_gap_seconds: int = 30
    cost_risk_ratio: float = 0.8
    memory_risk_ceiling_mb: int = 1500

    # State machine
    cooldown_seconds: int = 300
    stale_tick_seconds: int = 900

    # Alert thresholds
    success_rate_warning: float = 0.95
    success_rate_critical: float = 0.90
    error_count_warning: int = 3
    error_count_critical: int = 5
    duration_warning_ms: float = 300_000
    hourly_cost_warning: float = 25.0
    hourly_cost_critical: float = 50.0

    # Retention
    archive_after_days: int = 30

    categories: tuple[CategoryConfig, ...] = DEFAULT_CATEGORIES

    @field_validator("backoff_schedule_seconds")
    @classmethod
    def _backoff_not_empty(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if not value or any(v <= 0 for v in value):
            raise ValueError("backoff_schedule_seconds needs at least one positive delay")
        return value

    @model_validator(mode="after")
    def _unique_categories(self) -> "CoordinatorSettings":
        ids = [c.category_id for c in self.categories]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate category ids: {ids}")
        if not 0 < self.warning_utilization < self.critical_utilization <= 1:
            raise ValueError("Utilization thresholds must satisfy 0 < warning < critical <= 1")
        return self

    def category(self, category_id: str) -> Optional[CategoryConfig]:
        """Look up a category profile by id."""
        for config in self.categories:
            if config.category_id == category_id:
                return config
        return None

    def backoff_seconds(self, retry_count: int) -> int:
        """Delay before the next attempt after ``retry_count`` failures."""
        index = max(0, min(retry_count - 1, len(self.backoff_schedule_seconds) - 1))
        return self.backoff_schedule_seconds[index]


def load_settings(**overrides) -> CoordinatorSettings:
    """Load settings from the environment, applying explicit overrides."""
    return CoordinatorSettings(**overrides)
