"""
Admission Controller - resource feasibility of scheduler candidates.

Every decision is made against one ``PoolSnapshot`` read at the start of
planning, so capacity freed later in the tick never makes a task
feasible retroactively.
"""
from dataclasses import dataclass, field
from typing import Optional

import structlog

from ..core.config import CategoryConfig, CoordinatorSettings
from ..core.errors import ErrorKind, ValidationError
from ..monitoring.recommendations import Recommendation, pool_recommendations
from ..resources.pools import PoolSnapshot, PoolStatus, ResourceType
from .scheduler import SchedulingCandidate

logger = structlog.get_logger(__name__)

_BLOCKING = (PoolStatus.UNAVAILABLE, PoolStatus.CRITICAL)


@dataclass(frozen=True)
class AdmissionDecision:
    """Feasibility verdict for one candidate."""
    candidate: SchedulingCandidate
    feasible: bool
    admitted_batch_size: int = 0
    reasons: tuple[str, ...] = ()
    blocking_pools: tuple[str, ...] = ()
    error_kind: Optional[ErrorKind] = None

    @property
    def category_id(self) -> str:
        return self.candidate.category_id

    def to_dict(self) -> dict:
        return {
            "category_id": self.category_id,
            "feasible": self.feasible,
            "admitted_batch_size": self.admitted_batch_size,
            "reasons": list(self.reasons),
            "blocking_pools": list(self.blocking_pools),
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


@dataclass
class AdmissionResult:
    """All decisions for a tick, in scheduler order."""
    decisions: list[AdmissionDecision] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    snapshot: Optional[PoolSnapshot] = None

    @property
    def feasible(self) -> list[AdmissionDecision]:
        return [d for d in self.decisions if d.feasible]

    @property
    def infeasible(self) -> list[AdmissionDecision]:
        return [d for d in self.decisions if not d.feasible]

    def to_dict(self) -> dict:
        return {
            "decisions": [d.to_dict() for d in self.decisions],
            "recommendations": [r.to_dict() for r in self.recommendations],
        }


class AdmissionController:
    """Marks candidates feasible or infeasible against pool headroom."""

    def __init__(self, settings: CoordinatorSettings):
        self.settings = settings

    def evaluate(
        self,
        candidates: list[SchedulingCandidate],
        snapshot: PoolSnapshot,
    ) -> AdmissionResult:
        """
        Decide every candidate that the scheduler wants to run.

        Candidates with ``should_execute`` false are not considered.
        """
        result = AdmissionResult(
            recommendations=pool_recommendations(snapshot),
            snapshot=snapshot,
        )
        for candidate in candidates:
            if not candidate.should_execute:
                continue
            try:
                decision = self._decide(candidate, snapshot)
            except ValidationError as e:
                decision = AdmissionDecision(
                    candidate=candidate,
                    feasible=False,
                    reasons=(e.message,),
                    error_kind=ErrorKind.VALIDATION,
                )
            result.decisions.append(decision)

        logger.info(
            "admission_evaluated",
            considered=len(result.decisions),
            feasible=len(result.feasible),
            infeasible=[d.category_id for d in result.infeasible],
            recommendations=len(result.recommendations),
        )
        return result

    def _decide(self, candidate: SchedulingCandidate, snapshot: PoolSnapshot) -> AdmissionDecision:
        candidate.validate()
        config = self.settings.category(candidate.category_id)
        if config is None:
            raise ValidationError(
                f"Unknown category {candidate.category_id!r}",
                {"category_id": candidate.category_id},
            )

        reasons = []
        blocking = []
        for name in config.resource_pools:
            status = snapshot.status_of(name)
            if status is None:
                raise ValidationError(
                    f"Category {config.category_id} maps to unknown pool {name!r}",
                    {"category_id": config.category_id, "resource_type": name},
                )
            if status in _BLOCKING:
                blocking.append(name)
                reasons.append(f"Pool {name} is {status.value}")

        budget_name = ResourceType.BUDGET.value
        if budget_name in config.resource_pools and budget_name not in blocking:
            remaining = snapshot.remaining(budget_name)
            if candidate.estimated_cost > remaining:
                blocking.append(budget_name)
                reasons.append(
                    f"Estimated cost {candidate.estimated_cost:.2f} exceeds remaining budget {remaining:.2f}"
                )

        if blocking:
            return AdmissionDecision(
                candidate=candidate,
                feasible=False,
                reasons=tuple(reasons),
                blocking_pools=tuple(blocking),
                error_kind=ErrorKind.RESOURCE_EXHAUSTION,
            )

        admitted = self._fit_batch(config, candidate.batch_size, snapshot)
        if admitted < candidate.batch_size:
            reasons.append(f"Batch shrunk from {candidate.batch_size} to {admitted} to fit headroom")
        if admitted < config.min_batch_size:
            return AdmissionDecision(
                candidate=candidate,
                feasible=False,
                reasons=tuple(reasons + [f"Headroom below the minimum batch of {config.min_batch_size}"]),
                error_kind=ErrorKind.RESOURCE_EXHAUSTION,
            )
        reasons.append("All mapped pools have headroom")
        return AdmissionDecision(
            candidate=candidate,
            feasible=True,
            admitted_batch_size=admitted,
            reasons=tuple(reasons),
        )

    def _fit_batch(self, config: CategoryConfig, requested: int, snapshot: PoolSnapshot) -> int:
        """Largest batch, up to ``requested``, the snapshot's call quota allows."""
        calls = ResourceType.EXTERNAL_CALLS.value
        if calls not in config.resource_pools:
            return requested
        remaining_calls = int(snapshot.remaining(calls))
        if config.fixed_calls is not None:
            return requested if remaining_calls >= config.fixed_calls else 0
        if config.calls_per_item == 0:
            return requested
        return min(requested, remaining_calls // config.calls_per_item)
