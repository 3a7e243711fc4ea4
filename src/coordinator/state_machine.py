"""
Coordinator state machine.

Every transition is appended to ``coordinator_states`` and never
updated. A ``Transition`` can only be built for an allowed edge, so an
illegal change fails before anything touches the store.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

import structlog

from ..core.config import CoordinatorSettings
from ..core.errors import ConcurrencyConflictError, InvalidTransitionError
from ..core.store import Database, from_db_time, from_json, to_db_time, to_json

logger = structlog.get_logger(__name__)


class CoordinatorState(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    DISPATCHING = "dispatching"
    MONITORING = "monitoring"
    ERROR_RECOVERY = "error_recovery"
    COOLDOWN = "cooldown"
    COMPLETED = "completed"

    @property
    def in_flight(self) -> bool:
        return self in IN_FLIGHT_STATES


IN_FLIGHT_STATES = frozenset({
    CoordinatorState.ANALYZING,
    CoordinatorState.DISPATCHING,
    CoordinatorState.MONITORING,
})

ALLOWED_TRANSITIONS: frozenset[tuple[CoordinatorState, CoordinatorState]] = frozenset(
    {
        (CoordinatorState.IDLE, CoordinatorState.ANALYZING),
        (CoordinatorState.ANALYZING, CoordinatorState.DISPATCHING),
        (CoordinatorState.ANALYZING, CoordinatorState.IDLE),
        (CoordinatorState.DISPATCHING, CoordinatorState.MONITORING),
        (CoordinatorState.MONITORING, CoordinatorState.IDLE),
        (CoordinatorState.ERROR_RECOVERY, CoordinatorState.COOLDOWN),
        (CoordinatorState.COOLDOWN, CoordinatorState.IDLE),
    }
    | {
        (state, CoordinatorState.ERROR_RECOVERY)
        for state in CoordinatorState
        if state is not CoordinatorState.ERROR_RECOVERY
    }
)


@dataclass(frozen=True)
class Transition:
    """An allowed edge. Construction fails for anything else."""
    source: CoordinatorState
    target: CoordinatorState

    def __post_init__(self):
        if (self.source, self.target) not in ALLOWED_TRANSITIONS:
            raise InvalidTransitionError(
                f"Transition {self.source.value} -> {self.target.value} is not allowed",
                {"from": self.source.value, "to": self.target.value},
            )


@dataclass(frozen=True)
class StateEntry:
    """One row of the transition log."""
    state: CoordinatorState
    entered_at: datetime
    previous_state: Optional[CoordinatorState] = None
    reason: Optional[str] = None
    worker_id: Optional[str] = None
    previous_duration_ms: Optional[int] = None
    payload: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "StateEntry":
        return cls(
            id=row["id"],
            state=CoordinatorState(row["state"]),
            previous_state=CoordinatorState(row["previous_state"]) if row["previous_state"] else None,
            reason=row["reason"],
            worker_id=row["worker_id"],
            entered_at=from_db_time(row["entered_at"]),
            previous_duration_ms=row["previous_duration_ms"],
            payload=from_json(row["payload"]),
        )

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "reason": self.reason,
            "worker_id": self.worker_id,
            "entered_at": self.entered_at.isoformat(),
            "previous_duration_ms": self.previous_duration_ms,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class TickAdmission:
    started: bool
    reason: str
    state: CoordinatorState


class CoordinatorStateMachine:
    """Durable phase tracking for the tick pipeline."""

    def __init__(self, db: Database, settings: CoordinatorSettings):
        self.db = db
        self.settings = settings

    def current(self) -> Optional[StateEntry]:
        row = self.db.fetch_one("SELECT * FROM coordinator_states ORDER BY id DESC LIMIT 1")
        return StateEntry.from_row(row) if row else None

    @property
    def state(self) -> CoordinatorState:
        entry = self.current()
        return entry.state if entry else CoordinatorState.IDLE

    def history(self, limit: int = 50) -> list[StateEntry]:
        rows = self.db.fetch_all(
            "SELECT * FROM coordinator_states ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [StateEntry.from_row(row) for row in rows]

    def begin_tick(self, worker_id: str, now: datetime) -> TickAdmission:
        """
        Enter ANALYZING if no other tick holds the coordinator.

        Raises:
            ConcurrencyConflictError: Another tick is in flight and not stale.
        """
        with self.db.transaction() as conn:
            latest = self._latest(conn)
            state = latest.state if latest else CoordinatorState.IDLE

            if state.in_flight:
                age = now - latest.entered_at
                if age < timedelta(seconds=self.settings.stale_tick_seconds):
                    raise ConcurrencyConflictError(
                        f"Tick already in flight ({state.value} for {age.total_seconds():.0f}s)",
                        {"state": state.value, "owner": latest.worker_id},
                    )
                payload = {"abandoned_state": state.value, "abandoned_by": latest.worker_id}
                self._append(conn, Transition(state, CoordinatorState.ERROR_RECOVERY), now,
                             "stale_tick", worker_id, payload)
                self._append(conn, Transition(CoordinatorState.ERROR_RECOVERY, CoordinatorState.COOLDOWN),
                             now, "stale_tick", worker_id)
                logger.warning("stale_tick_recovered", **payload)
                return TickAdmission(False, "recovered_stale_tick", CoordinatorState.COOLDOWN)

            if state is CoordinatorState.ERROR_RECOVERY:
                self._append(conn, Transition(state, CoordinatorState.COOLDOWN), now,
                             "recovery_resumed", worker_id)
                return TickAdmission(False, "cooldown_started", CoordinatorState.COOLDOWN)

            if state is CoordinatorState.COOLDOWN:
                if now - latest.entered_at < timedelta(seconds=self.settings.cooldown_seconds):
                    return TickAdmission(False, "cooling_down", CoordinatorState.COOLDOWN)
                self._append(conn, Transition(state, CoordinatorState.IDLE), now,
                             "cooldown_elapsed", worker_id)
                state = CoordinatorState.IDLE

            self._append(conn, Transition(state, CoordinatorState.ANALYZING), now, "tick_start", worker_id)
        return TickAdmission(True, "tick_start", CoordinatorState.ANALYZING)

    def plan_ready(self, worker_id: str, now: datetime, payload: Optional[dict] = None) -> StateEntry:
        return self.transition(CoordinatorState.DISPATCHING, now, "plan_ready", worker_id, payload)

    def plan_empty(
        self, worker_id: str, now: datetime, payload: Optional[dict] = None, reason: str = "plan_empty"
    ) -> StateEntry:
        return self.transition(CoordinatorState.IDLE, now, reason, worker_id, payload)

    def dispatched(self, worker_id: str, now: datetime, payload: Optional[dict] = None) -> StateEntry:
        return self.transition(CoordinatorState.MONITORING, now, "records_created", worker_id, payload)

    def dispatch_refused(self, worker_id: str, now: datetime, payload: Optional[dict] = None) -> StateEntry:
        return self.transition(CoordinatorState.MONITORING, now, "reservation_refused", worker_id, payload)

    def tick_finished(self, worker_id: str, now: datetime, payload: Optional[dict] = None) -> StateEntry:
        return self.transition(CoordinatorState.IDLE, now, "tick_end", worker_id, payload)

    def recover(self, worker_id: str, now: datetime, payload: Optional[dict] = None) -> StateEntry:
        """Force ERROR_RECOVERY then COOLDOWN in one step."""
        with self.db.transaction() as conn:
            latest = self._latest(conn)
            state = latest.state if latest else CoordinatorState.IDLE
            if state is not CoordinatorState.ERROR_RECOVERY:
                self._append(conn, Transition(state, CoordinatorState.ERROR_RECOVERY), now,
                             "fault", worker_id, payload)
            return self._append(conn, Transition(CoordinatorState.ERROR_RECOVERY, CoordinatorState.COOLDOWN),
                                now, "fault", worker_id)

    def transition(
        self,
        target: CoordinatorState,
        now: datetime,
        reason: Optional[str] = None,
        worker_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> StateEntry:
        """Append one transition from the current state to ``target``."""
        with self.db.transaction() as conn:
            latest = self._latest(conn)
            source = latest.state if latest else CoordinatorState.IDLE
            return self._append(conn, Transition(source, target), now, reason, worker_id, payload)

    @staticmethod
    def _latest(conn) -> Optional[StateEntry]:
        row = conn.execute("SELECT * FROM coordinator_states ORDER BY id DESC LIMIT 1").fetchone()
        return StateEntry.from_row(row) if row else None

    def _append(
        self,
        conn,
        transition: Transition,
        now: datetime,
        reason: Optional[str],
        worker_id: Optional[str],
        payload: Optional[dict] = None,
    ) -> StateEntry:
        latest = self._latest(conn)
        current = latest.state if latest else CoordinatorState.IDLE
        if current is not transition.source:
            raise ConcurrencyConflictError(
                f"State moved to {current.value} before {transition.source.value} -> {transition.target.value}",
                {"expected": transition.source.value, "found": current.value},
            )
        duration_ms = None
        if latest is not None:
            duration_ms = max(0, int((now - latest.entered_at).total_seconds() * 1000))
        entry = StateEntry(
            state=transition.target,
            previous_state=transition.source,
            reason=reason,
            worker_id=worker_id,
            entered_at=now,
            previous_duration_ms=duration_ms,
            payload=payload or {},
        )
        cursor = conn.execute(
            """
            INSERT INTO coordinator_states
                (state, previous_state, reason, worker_id, entered_at, previous_duration_ms, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.state.value,
                entry.previous_state.value,
                reason,
                worker_id,
                to_db_time(now),
                duration_ms,
                to_json(entry.payload),
            ),
        )
        logger.debug(
            "coordinator_state_changed",
            previous=transition.source.value,
            state=transition.target.value,
            reason=reason,
        )
        return StateEntry(**{**entry.__dict__, "id": cursor.lastrowid})
