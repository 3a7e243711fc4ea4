"""
Execution Planner - turns admitted candidates into a bounded plan.

The planner walks admitted candidates in scheduler order, holding a
running view of headroom taken from the admission snapshot. Each task's
batch is cut to what the remaining budget and call quota allow, and tasks
that no longer fit (no items left, memory, connections, execution slots)
are dropped with a reason instead of failing the plan.
"""
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import structlog

from ..core.config import CategoryConfig, CoordinatorSettings
from ..core.errors import ErrorKind
from ..resources.pools import PoolSnapshot, ResourceType
from .admission import AdmissionDecision, AdmissionResult

logger = structlog.get_logger(__name__)

_EPSILON = 1e-9


class ExecutionStrategy(str, Enum):
    NONE = "none"
    SINGLE = "single"
    SEQUENTIAL = "sequential"
    SEQUENTIAL_WITH_OVERLAP = "sequential_with_overlap"

    @classmethod
    def for_task_count(cls, count: int) -> "ExecutionStrategy":
        if count > 2:
            return cls.SEQUENTIAL_WITH_OVERLAP
        if count == 2:
            return cls.SEQUENTIAL
        if count == 1:
            return cls.SINGLE
        return cls.NONE


@dataclass(frozen=True)
class ResourceFootprint:
    """What one task draws from each pool."""
    cost: float = 0.0
    external_calls: int = 0
    memory_mb: int = 0
    connections: int = 0

    def reservation(self, pools: tuple[str, ...]) -> dict[str, float]:
        """Amounts per pool, limited to the pools the category maps to."""
        amounts = {
            ResourceType.BUDGET.value: self.cost,
            ResourceType.EXTERNAL_CALLS.value: float(self.external_calls),
            ResourceType.MEMORY.value: float(self.memory_mb),
            ResourceType.CONNECTIONS.value: float(self.connections),
        }
        return {name: amount for name, amount in amounts.items() if name in pools and amount > 0}

    def to_dict(self) -> dict:
        return {
            "cost": round(self.cost, 4),
            "external_calls": self.external_calls,
            "memory_mb": self.memory_mb,
            "connections": self.connections,
        }


@dataclass(frozen=True)
class PlannedTask:
    """One category's batch in the plan."""
    category_id: str
    priority: int
    batch_size: int
    estimated_cost: float
    estimated_duration_ms: float
    predicted_success_rate: float
    footprint: ResourceFootprint
    reservation: dict[str, float]
    execution_order: int
    start_offset_seconds: int
    dependencies: tuple[str, ...]
    timeout_at: datetime
    reasoning: tuple[str, ...] = ()

    @property
    def start_offset(self) -> timedelta:
        return timedelta(seconds=self.start_offset_seconds)

    def to_dict(self) -> dict:
        return {
            "category_id": self.category_id,
            "priority": self.priority,
            "batch_size": self.batch_size,
            "estimated_cost": round(self.estimated_cost, 4),
            "estimated_duration_ms": self.estimated_duration_ms,
            "predicted_success_rate": self.predicted_success_rate,
            "footprint": self.footprint.to_dict(),
            "reservation": self.reservation,
            "execution_order": self.execution_order,
            "start_offset_seconds": self.start_offset_seconds,
            "dependencies": list(self.dependencies),
            "timeout_at": self.timeout_at.isoformat(),
            "reasoning": list(self.reasoning),
        }


@dataclass(frozen=True)
class DroppedTask:
    """A candidate excluded from the plan, and why."""
    category_id: str
    reason: str
    error_kind: ErrorKind

    def to_dict(self) -> dict:
        return {"category_id": self.category_id, "reason": self.reason, "error_kind": self.error_kind.value}


@dataclass(frozen=True)
class RiskAssessment:
    cost_risk: bool = False
    resource_risk: bool = False
    timing_risk: bool = False
    overall: str = "low"

    @property
    def flags(self) -> list[str]:
        return [
            name
            for name, raised in (
                ("cost_risk", self.cost_risk),
                ("resource_risk", self.resource_risk),
                ("timing_risk", self.timing_risk),
            )
            if raised
        ]

    def to_dict(self) -> dict:
        return {
            "cost_risk": self.cost_risk,
            "resource_risk": self.resource_risk,
            "timing_risk": self.timing_risk,
            "overall": self.overall,
        }


@dataclass
class ExecutionPlan:
    """Ordered, resource-bounded set of tasks for one tick."""
    plan_id: str
    created_at: datetime
    worker_id: str
    tasks: list[PlannedTask] = field(default_factory=list)
    dropped: list[DroppedTask] = field(default_factory=list)
    risk: RiskAssessment = field(default_factory=RiskAssessment)

    @property
    def is_empty(self) -> bool:
        return not self.tasks

    @property
    def total_cost(self) -> float:
        return sum(t.estimated_cost for t in self.tasks)

    @property
    def total_memory_mb(self) -> int:
        return sum(t.footprint.memory_mb for t in self.tasks)

    @property
    def total_calls(self) -> int:
        return sum(t.footprint.external_calls for t in self.tasks)

    @property
    def total_duration_ms(self) -> float:
        return sum(t.estimated_duration_ms for t in self.tasks)

    @property
    def efficiency_score(self) -> float:
        """Tasks per unit of cost; a zero-cost plan scores its task count."""
        if not self.tasks:
            return 0.0
        if self.total_cost <= 0:
            return float(len(self.tasks))
        return len(self.tasks) / self.total_cost

    @property
    def strategy(self) -> ExecutionStrategy:
        return ExecutionStrategy.for_task_count(len(self.tasks))

    @property
    def estimated_completion(self) -> datetime:
        return self.created_at + timedelta(milliseconds=self.total_duration_ms)

    def reservation_totals(self) -> dict[str, float]:
        totals: dict[str, float] = {}
        for task in self.tasks:
            for name, amount in task.reservation.items():
                totals[name] = totals.get(name, 0.0) + amount
        return totals

    def to_dict(self) -> dict:
        return {
            "plan_id": self.plan_id,
            "created_at": self.created_at.isoformat(),
            "worker_id": self.worker_id,
            "strategy": self.strategy.value,
            "tasks": [t.to_dict() for t in self.tasks],
            "dropped": [d.to_dict() for d in self.dropped],
            "totals": {
                "cost": round(self.total_cost, 4),
                "memory_mb": self.total_memory_mb,
                "external_calls": self.total_calls,
                "duration_ms": self.total_duration_ms,
            },
            "efficiency_score": round(self.efficiency_score, 4),
            "estimated_completion": self.estimated_completion.isoformat(),
            "risk": self.risk.to_dict(),
        }


@dataclass
class _Headroom:
    """Running headroom while tasks are added."""
    budget: float
    calls: float
    memory: float
    connections: float

    @classmethod
    def from_snapshot(cls, snapshot: PoolSnapshot) -> "_Headroom":
        return cls(
            budget=snapshot.remaining(ResourceType.BUDGET.value),
            calls=snapshot.remaining(ResourceType.EXTERNAL_CALLS.value),
            memory=snapshot.remaining(ResourceType.MEMORY.value),
            connections=snapshot.remaining(ResourceType.CONNECTIONS.value),
        )


class ExecutionPlanner:
    """Builds one ExecutionPlan per tick."""

    def __init__(self, settings: CoordinatorSettings):
        self.settings = settings

    def build(
        self,
        admission: AdmissionResult,
        worker_id: str,
        now: datetime,
        available_slots: Optional[int] = None,
    ) -> ExecutionPlan:
        """
        Plan every feasible decision in ``admission``.

        Args:
            admission: Decisions plus the snapshot they were made against.
            worker_id: Coordinator worker that owns the plan.
            now: Tick clock; start offsets and timeouts are relative to it.
            available_slots: Free execution slots; None means unbounded.
        """
        plan = ExecutionPlan(
            plan_id=f"plan-{int(now.timestamp())}-{uuid.uuid4().hex[:8]}",
            created_at=now,
            worker_id=worker_id,
        )
        if admission.snapshot is None:
            plan.dropped.extend(
                DroppedTask(d.category_id, "No resource snapshot for planning", ErrorKind.VALIDATION)
                for d in admission.feasible
            )
            return plan

        budget_at_start = admission.snapshot.remaining(ResourceType.BUDGET.value)
        headroom = _Headroom.from_snapshot(admission.snapshot)
        sized: list[tuple[AdmissionDecision, CategoryConfig, int, ResourceFootprint]] = []

        for decision in admission.feasible:
            config = self.settings.category(decision.category_id)
            if config is None:
                plan.dropped.append(DroppedTask(
                    decision.category_id, "Unknown category", ErrorKind.VALIDATION
                ))
                continue
            if available_slots is not None and len(sized) >= available_slots:
                plan.dropped.append(DroppedTask(
                    config.category_id,
                    f"No free execution slot ({available_slots} available)",
                    ErrorKind.RESOURCE_EXHAUSTION,
                ))
                continue

            size = self._fit(config, decision.admitted_batch_size, headroom)
            if size < config.min_batch_size:
                plan.dropped.append(DroppedTask(
                    config.category_id,
                    f"Remaining budget or call quota cannot cover the minimum batch of {config.min_batch_size}",
                    ErrorKind.RESOURCE_EXHAUSTION,
                ))
                continue

            pools = config.resource_pools
            # Only mapped pools count toward the footprint
            footprint = ResourceFootprint(
                cost=config.cost_per_item * size,
                external_calls=config.calls_for(size) if ResourceType.EXTERNAL_CALLS.value in pools else 0,
                memory_mb=config.memory_mb if ResourceType.MEMORY.value in pools else 0,
                connections=config.connections if ResourceType.CONNECTIONS.value in pools else 0,
            )
            if ResourceType.MEMORY.value in pools and footprint.memory_mb > headroom.memory + _EPSILON:
                plan.dropped.append(DroppedTask(
                    config.category_id,
                    f"Needs {footprint.memory_mb} MB, {headroom.memory:.0f} MB left",
                    ErrorKind.RESOURCE_EXHAUSTION,
                ))
                continue
            if ResourceType.CONNECTIONS.value in pools and footprint.connections > headroom.connections + _EPSILON:
                plan.dropped.append(DroppedTask(
                    config.category_id,
                    f"Needs {footprint.connections} connections, {headroom.connections:.0f} left",
                    ErrorKind.RESOURCE_EXHAUSTION,
                ))
                continue

            self._consume(headroom, pools, footprint)
            sized.append((decision, config, size, footprint))

        planned = {config.category_id for _, config, _, _ in sized}
        for order, (decision, config, size, footprint) in enumerate(self._dependency_order(sized), start=1):
            offset = (order - 1) * self.settings.start_gap_seconds
            candidate = decision.candidate
            reasoning = candidate.reasoning + decision.reasons
            if size < candidate.batch_size:
                reasoning += (f"Batch cut from {candidate.batch_size} to {size} by remaining headroom",)
            plan.tasks.append(PlannedTask(
                category_id=config.category_id,
                priority=candidate.priority,
                batch_size=size,
                estimated_cost=footprint.cost,
                estimated_duration_ms=candidate.estimated_duration_ms,
                predicted_success_rate=candidate.predicted_success_rate,
                footprint=footprint,
                reservation=footprint.reservation(config.resource_pools),
                execution_order=order,
                start_offset_seconds=offset,
                dependencies=tuple(dep for dep in config.depends_on if dep in planned),
                timeout_at=now + timedelta(seconds=offset, milliseconds=candidate.estimated_duration_ms),
                reasoning=reasoning,
            ))

        plan.risk = self.assess_risk(plan, budget_at_start)
        logger.info(
            "execution_plan_built",
            plan_id=plan.plan_id,
            tasks=[t.category_id for t in plan.tasks],
            dropped=[d.category_id for d in plan.dropped],
            total_cost=round(plan.total_cost, 4),
            risk=plan.risk.flags,
        )
        return plan

    def _fit(self, config: CategoryConfig, requested: int, headroom: _Headroom) -> int:
        """min(requested, floor(budget / cost_per_item), remaining call quota)."""
        size = requested
        pools = config.resource_pools
        if ResourceType.BUDGET.value in pools and config.cost_per_item > 0:
            size = min(size, math.floor(headroom.budget / config.cost_per_item + _EPSILON))
        if ResourceType.EXTERNAL_CALLS.value in pools:
            calls_left = int(headroom.calls + _EPSILON)
            if config.fixed_calls is not None:
                if calls_left < config.fixed_calls:
                    return 0
            elif config.calls_per_item > 0:
                size = min(size, calls_left // config.calls_per_item)
        return size

    @staticmethod
    def _consume(headroom: _Headroom, pools: tuple[str, ...], footprint: ResourceFootprint) -> None:
        if ResourceType.BUDGET.value in pools:
            headroom.budget -= footprint.cost
        if ResourceType.EXTERNAL_CALLS.value in pools:
            headroom.calls -= footprint.external_calls
        if ResourceType.MEMORY.value in pools:
            headroom.memory -= footprint.memory_mb
        if ResourceType.CONNECTIONS.value in pools:
            headroom.connections -= footprint.connections

    @staticmethod
    def _dependency_order(sized: list) -> list:
        """Scheduler order, except an aggregator waits for its planned dependencies."""
        planned = {config.category_id for _, config, _, _ in sized}
        ordered: list = []
        placed: set[str] = set()
        deferred: list = []

        def ready(config: CategoryConfig) -> bool:
            return all(dep in placed for dep in config.depends_on if dep in planned)

        for entry in sized:
            config = entry[1]
            if not ready(config):
                deferred.append(entry)
                continue
            ordered.append(entry)
            placed.add(config.category_id)
            progress = True
            while progress:
                progress = False
                for waiting in list(deferred):
                    if ready(waiting[1]):
                        deferred.remove(waiting)
                        ordered.append(waiting)
                        placed.add(waiting[1].category_id)
                        progress = True
        # Cyclic dependencies keep scheduler order
        ordered.extend(deferred)
        return ordered

    def assess_risk(self, plan: ExecutionPlan, remaining_budget: float) -> RiskAssessment:
        cost_risk = plan.total_cost > self.settings.cost_risk_ratio * remaining_budget
        resource_risk = plan.total_memory_mb > self.settings.memory_risk_ceiling_mb
        timing_risk = plan.total_duration_ms > self.settings.tick_period_seconds * 1000
        if cost_risk or resource_risk:
            overall = "high"
        elif timing_risk or len(plan.tasks) > 2:
            overall = "medium"
        else:
            overall = "low"
        return RiskAssessment(
            cost_risk=cost_risk,
            resource_risk=resource_risk,
            timing_risk=timing_risk,
            overall=overall,
        )
