"""
Priority Scheduler - per-category priority scores and go/no-go decisions.

For every configured category the scheduler combines:

- time since the category last ran, against its base interval
- backlog depth in the work queue
- calendar context (business hours, peak hours, weekend)
- recent reliability (success rate over a trailing window)

into one priority score, a batch size, and a decision. The scheduler is
pure: it reads nothing from storage, so the same stats and clock always
produce the same candidates.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from ..core.config import BatchStrategy, CategoryConfig, CoordinatorSettings
from ..core.errors import ValidationError

logger = structlog.get_logger(__name__)

# Floor for predicted success when ranking by cost per expected success
_MIN_SUCCESS_FOR_RANKING = 0.1


@dataclass(frozen=True)
class CategoryStats:
    """Observed history for one category, gathered before scoring."""
    category_id: str
    minutes_since_last_run: Optional[float] = None  # None: never ran
    backlog_size: int = 0
    recent_successes: int = 0
    recent_failures: int = 0
    avg_duration_ms: Optional[float] = None

    @property
    def recent_attempts(self) -> int:
        return self.recent_successes + self.recent_failures

    def success_rate(self) -> Optional[float]:
        if self.recent_attempts == 0:
            return None
        return self.recent_successes / self.recent_attempts


@dataclass(frozen=True)
class CalendarContext:
    """Calendar flags derived from the tick's clock."""
    hour: int
    is_business_hours: bool
    is_peak_hours: bool
    is_weekend: bool

    @classmethod
    def from_datetime(cls, now: datetime) -> "CalendarContext":
        hour = now.hour
        return cls(
            hour=hour,
            is_business_hours=9 <= hour <= 17,
            is_peak_hours=10 <= hour <= 16,
            is_weekend=now.weekday() >= 5,
        )

    def to_dict(self) -> dict:
        return {
            "hour": self.hour,
            "is_business_hours": self.is_business_hours,
            "is_peak_hours": self.is_peak_hours,
            "is_weekend": self.is_weekend,
        }


@dataclass(frozen=True)
class ScoreBreakdown:
    """Each additive term of a priority score."""
    base: int
    overdue_bonus: int = 0
    backlog_bonus: int = 0
    calendar_bonus: int = 0
    reliability_adjustment: int = 0

    @property
    def total(self) -> int:
        return (
            self.base
            + self.overdue_bonus
            + self.backlog_bonus
            + self.calendar_bonus
            + self.reliability_adjustment
        )

    def to_dict(self) -> dict:
        return {
            "base": self.base,
            "overdue_bonus": self.overdue_bonus,
            "backlog_bonus": self.backlog_bonus,
            "calendar_bonus": self.calendar_bonus,
            "reliability_adjustment": self.reliability_adjustment,
            "total": self.total,
        }


@dataclass(frozen=True)
class SchedulingCandidate:
    """One category's proposal for this tick."""
    category_id: str
    priority: int
    should_execute: bool
    batch_size: int
    estimated_duration_ms: float
    estimated_cost: float
    predicted_success_rate: float
    backlog_size: int
    minutes_since_last_run: Optional[float]
    reasoning: tuple[str, ...]
    breakdown: ScoreBreakdown

    @property
    def ranking_key(self) -> tuple:
        """Priority desc, then cost per expected success, then duration."""
        return (
            -self.priority,
            self.estimated_cost / max(self.predicted_success_rate, _MIN_SUCCESS_FOR_RANKING),
            self.estimated_duration_ms,
        )

    def validate(self) -> None:
        """Raise ValidationError when the candidate cannot be planned."""
        problems = []
        if not self.category_id:
            problems.append("missing category_id")
        if self.batch_size <= 0:
            problems.append(f"batch_size must be positive, got {self.batch_size}")
        if self.estimated_cost < 0:
            problems.append(f"estimated_cost must be non-negative, got {self.estimated_cost}")
        if not 0 <= self.predicted_success_rate <= 1:
            problems.append(f"predicted_success_rate out of range: {self.predicted_success_rate}")
        if not self.reasoning:
            problems.append("reasoning trace is empty")
        if problems:
            raise ValidationError(
                f"Invalid candidate {self.category_id!r}: {'; '.join(problems)}",
                {"category_id": self.category_id, "problems": problems},
            )

    def to_dict(self) -> dict:
        return {
            "category_id": self.category_id,
            "priority": self.priority,
            "should_execute": self.should_execute,
            "batch_size": self.batch_size,
            "estimated_duration_ms": self.estimated_duration_ms,
            "estimated_cost": round(self.estimated_cost, 4),
            "predicted_success_rate": round(self.predicted_success_rate, 4),
            "backlog_size": self.backlog_size,
            "minutes_since_last_run": (
                round(self.minutes_since_last_run, 1)
                if self.minutes_since_last_run is not None else None
            ),
            "reasoning": list(self.reasoning),
            "breakdown": self.breakdown.to_dict(),
        }


def overdue_bonus(minutes_since_last_run: Optional[float], interval_minutes: int) -> int:
    if minutes_since_last_run is None or minutes_since_last_run >= interval_minutes * 1.5:
        return 30
    if minutes_since_last_run >= interval_minutes:
        return 20
    return 0


def backlog_bonus(backlog_size: int) -> int:
    if backlog_size > 50:
        return 25
    if backlog_size > 20:
        return 15
    if backlog_size > 5:
        return 10
    return 0


def calendar_bonus(calendar: CalendarContext) -> int:
    if calendar.is_weekend:
        return 0
    if calendar.is_peak_hours:
        return 10
    if calendar.is_business_hours:
        return 5
    return 0


def reliability_adjustment(success_rate: Optional[float]) -> int:
    # No history: no adjustment
    if success_rate is None:
        return 0
    if success_rate >= 0.95:
        return 5
    if success_rate < 0.8:
        return -10
    return 0


def batch_size_for(config: CategoryConfig, backlog_size: int) -> int:
    """Category-specific batch size, bounded by ``max_batch_size``."""
    if config.batch_strategy == BatchStrategy.SINGLE:
        return 1
    if config.batch_strategy == BatchStrategy.LIGHTWEIGHT:
        wanted = backlog_size
    else:
        wanted = backlog_size // config.backlog_divisor
    return min(config.max_batch_size, max(config.min_batch_size, wanted))


class PriorityScheduler:
    """Scores every category and ranks the results."""

    def __init__(self, settings: CoordinatorSettings):
        self.settings = settings

    def score(
        self,
        config: CategoryConfig,
        stats: CategoryStats,
        calendar: CalendarContext,
    ) -> SchedulingCandidate:
        """Compute one category's candidate."""
        interval = config.base_interval_minutes
        observed_rate = stats.success_rate()
        predicted = observed_rate if observed_rate is not None else config.success_rate_floor

        breakdown = ScoreBreakdown(
            base=config.base_priority,
            overdue_bonus=overdue_bonus(stats.minutes_since_last_run, interval),
            backlog_bonus=backlog_bonus(stats.backlog_size),
            calendar_bonus=calendar_bonus(calendar),
            reliability_adjustment=reliability_adjustment(observed_rate),
        )
        priority = breakdown.total
        batch_size = batch_size_for(config, stats.backlog_size)
        duration = stats.avg_duration_ms or config.estimated_duration_ms

        interval_due = (
            stats.minutes_since_last_run is None
            or stats.minutes_since_last_run >= interval * 0.9
        )
        above_threshold = priority >= self.settings.dispatch_threshold
        reliable_enough = predicted >= config.success_rate_floor
        should_execute = above_threshold and interval_due and reliable_enough

        reasoning = []
        if stats.minutes_since_last_run is None:
            reasoning.append("Never run before")
        elif stats.minutes_since_last_run >= interval:
            reasoning.append(
                f"Scheduled interval reached ({stats.minutes_since_last_run:.0f} >= {interval} min)"
            )
        elif not interval_due:
            reasoning.append(
                f"Ran {stats.minutes_since_last_run:.0f} min ago, due at {interval * 0.9:.1f} min"
            )
        if stats.backlog_size > 20:
            reasoning.append(f"High queue backlog ({stats.backlog_size} items)")
        elif stats.backlog_size > 5:
            reasoning.append(f"Queue backlog ({stats.backlog_size} items)")
        if calendar.is_peak_hours and not calendar.is_weekend:
            reasoning.append("Peak business hours")
        elif calendar.is_business_hours and not calendar.is_weekend:
            reasoning.append("Business hours")
        if observed_rate is None:
            reasoning.append(f"No recent history, assuming success rate {predicted:.2f}")
        elif observed_rate >= 0.95:
            reasoning.append("High success rate predicted")
        elif observed_rate < 0.8:
            reasoning.append(f"Low recent success rate ({observed_rate:.2f})")
        if not reliable_enough:
            reasoning.append(
                f"Predicted success {predicted:.2f} below floor {config.success_rate_floor:.2f}"
            )
        reasoning.append(
            f"Priority {priority} {'>=' if above_threshold else '<'} "
            f"dispatch threshold {self.settings.dispatch_threshold}"
        )

        return SchedulingCandidate(
            category_id=config.category_id,
            priority=priority,
            should_execute=should_execute,
            batch_size=batch_size,
            estimated_duration_ms=float(duration),
            estimated_cost=config.cost_per_item * batch_size,
            predicted_success_rate=predicted,
            backlog_size=stats.backlog_size,
            minutes_since_last_run=stats.minutes_since_last_run,
            reasoning=tuple(reasoning),
            breakdown=breakdown,
        )

    def schedule(
        self,
        stats_by_category: dict[str, CategoryStats],
        now: datetime,
    ) -> list[SchedulingCandidate]:
        """
        Score every configured category and rank the candidates.

        Args:
            stats_by_category: Observed history; missing entries mean no history.
            now: Tick clock used for the calendar context.

        Returns:
            All candidates, ranked. Callers filter on ``should_execute``.
        """
        calendar = CalendarContext.from_datetime(now)
        candidates = [
            self.score(
                config,
                stats_by_category.get(config.category_id, CategoryStats(config.category_id)),
                calendar,
            )
            for config in self.settings.categories
        ]
        candidates.sort(key=lambda c: c.ranking_key)

        logger.info(
            "categories_scored",
            analyzed=len(candidates),
            ready=sum(1 for c in candidates if c.should_execute),
            calendar=calendar.to_dict(),
        )
        return candidates
