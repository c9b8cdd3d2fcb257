"""
Autonomous Gate Lifecycle Manager

State machine per gate:

    learning -> optimizing -> active
    learning | optimizing | active -> maintenance | paused   (external)
    active | maintenance -> optimizing                       (external)
    paused -> learning | optimizing                          (resume)

learning -> optimizing and optimizing -> active are automatic, driven by
recorded decision outcomes. Updates use optimistic concurrency on the
``version`` column: a conflicting write is retried once, then surfaced
as StaleState.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from gate_intel.config import settings
from gate_intel.db.models import (
    AutonomousDecisionEvent, AutonomousGate, Gate, GateDecisionOutcome, utcnow
)
from gate_intel.errors import InvalidTransition, StaleState, UnknownDecision, UnknownGate
from gate_intel.schemas import DecisionEventType, GateStatus, ThresholdConfig
from gate_intel.services.decision_log_service import decision_log_service
from gate_intel.services.event_context import event_context_service

logger = logging.getLogger(__name__)

# Transitions an operator may request
EXTERNAL_TRANSITIONS: Dict[GateStatus, Set[GateStatus]] = {
    GateStatus.learning: {GateStatus.maintenance, GateStatus.paused},
    GateStatus.optimizing: {GateStatus.maintenance, GateStatus.paused},
    GateStatus.active: {GateStatus.optimizing, GateStatus.maintenance, GateStatus.paused},
    GateStatus.maintenance: {GateStatus.optimizing, GateStatus.paused},
    GateStatus.paused: {GateStatus.learning, GateStatus.optimizing, GateStatus.maintenance},
}

# Transitions the engine applies on its own
AUTOMATIC_TRANSITIONS: Dict[GateStatus, Set[GateStatus]] = {
    GateStatus.learning: {GateStatus.optimizing},
    GateStatus.optimizing: {GateStatus.active},
}

CONFIDENCE_LEARNING_RATE = 0.05
SUCCESS_RATE_DECAY = 0.1
# Window accuracy this close below the threshold relaxes the threshold
NEAR_MISS_MARGIN = 0.05
NEAR_MISS_STEP = 0.01


class LifecycleService:

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def get_state(self, db: Session, gate_id: str) -> AutonomousGate:
        state = db.query(AutonomousGate).filter(AutonomousGate.gate_id == gate_id).first()
        if not state:
            raise UnknownGate(f"Gate {gate_id} has no autonomous state", {"gate_id": gate_id})
        return state

    def record_decision_outcome(
        self,
        db: Session,
        gate_id: str,
        decision_event_id: str,
        outcome_success: bool,
        response_time_ms: float
    ) -> AutonomousGate:
        """
        Feed one observed decision outcome into the gate's statistics and
        apply any automatic transition it unlocks.
        """
        return self._with_retry(
            db,
            lambda: self._apply_outcome(db, gate_id, decision_event_id, outcome_success, response_time_ms),
            gate_id,
        )

    def set_gate_operational_state(
        self,
        db: Session,
        gate_id: str,
        target: GateStatus,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> AutonomousGate:
        """Operator-triggered maintenance / pause / resume / re-optimize."""
        return self._with_retry(
            db,
            lambda: self._apply_external(db, gate_id, target, actor_id, reason),
            gate_id,
        )

    def resume_gate(
        self,
        db: Session,
        gate_id: str,
        actor_id: Optional[str] = None
    ) -> AutonomousGate:
        """Resume a paused gate into learning or optimizing, by decision count."""
        state = self.get_state(db, gate_id)
        if state.status != GateStatus.paused.value:
            raise InvalidTransition(
                f"Gate {gate_id} is {state.status}, only paused gates can resume",
                {"gate_id": gate_id, "status": state.status}
            )
        thresholds = self._thresholds(db, state)
        return self.set_gate_operational_state(
            db, gate_id, self.resume_target(state, thresholds), actor_id, "resume"
        )

    # ------------------------------------------------------------------
    # Transition helpers
    # ------------------------------------------------------------------
    @staticmethod
    def resume_target(state: AutonomousGate, thresholds: ThresholdConfig) -> GateStatus:
        if state.decisions_count < thresholds.promotion_sample_size:
            return GateStatus.learning
        return GateStatus.optimizing

    def is_external_transition_allowed(
        self,
        state: AutonomousGate,
        target: GateStatus,
        thresholds: ThresholdConfig
    ) -> bool:
        current = GateStatus(state.status)
        if target not in EXTERNAL_TRANSITIONS[current]:
            return False
        if current == GateStatus.paused and target in (GateStatus.learning, GateStatus.optimizing):
            return target == self.resume_target(state, thresholds)
        return True

    def apply_transition(
        self,
        state: AutonomousGate,
        target: GateStatus,
        thresholds: ThresholdConfig,
        automated: bool,
        reason: Optional[str] = None,
        log: bool = True,
        db: Optional[Session] = None,
        confidence: Optional[float] = None
    ) -> Optional[AutonomousDecisionEvent]:
        """
        Move ``state`` to ``target``. Appends one confidence history entry,
        closes the optimization cycle when leaving ``optimizing`` and, unless
        ``log`` is False (the caller logs the mutation itself), writes the
        decision event describing the transition.
        """
        now = utcnow()
        previous = GateStatus(state.status)
        if automated and target not in AUTOMATIC_TRANSITIONS.get(previous, set()):
            raise InvalidTransition(
                f"No automatic transition from {previous.value} to {target.value}",
                {"gate_id": state.gate_id, "status": previous.value, "target": target.value}
            )

        if previous == GateStatus.optimizing:
            state.last_optimization_at = now
            state.optimization_count = (state.optimization_count or 0) + 1
        if target == GateStatus.optimizing:
            state.window_decisions = 0
            state.window_successes = 0

        state.status = target.value
        self._append_history(state, now)

        logger.info(f"Gate {state.gate_id}: {previous.value} -> {target.value}")
        if not log:
            return None

        if target == GateStatus.maintenance:
            event_type = DecisionEventType.anomaly_detection
        else:
            event_type = DecisionEventType.performance_optimization
        return decision_log_service.record(
            db,
            event_id=state.event_id,
            gate_id=state.gate_id,
            event_type=event_type,
            action=f"transition {previous.value} -> {target.value}",
            reasoning=reason or f"Gate moved from {previous.value} to {target.value}",
            confidence_score=state.confidence_score if confidence is None else confidence,
            thresholds=thresholds,
            automated=automated,
            details={"from": previous.value, "to": target.value},
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _with_retry(self, db: Session, operation, gate_id: str) -> AutonomousGate:
        for attempt in (1, 2):
            try:
                return operation()
            except StaleDataError:
                db.rollback()
                logger.warning(f"Gate {gate_id}: concurrent state update (attempt {attempt})")
        raise StaleState(
            f"Gate {gate_id} state changed concurrently, retry the request",
            {"gate_id": gate_id}
        )

    def _thresholds(self, db: Session, state: AutonomousGate) -> ThresholdConfig:
        event = event_context_service.get_event(db, state.event_id)
        return event_context_service.threshold_config(db, event)

    def _apply_external(
        self,
        db: Session,
        gate_id: str,
        target: GateStatus,
        actor_id: Optional[str],
        reason: Optional[str]
    ) -> AutonomousGate:
        state = self.get_state(db, gate_id)
        thresholds = self._thresholds(db, state)

        if not self.is_external_transition_allowed(state, target, thresholds):
            raise InvalidTransition(
                f"Gate {gate_id} cannot move from {state.status} to {target.value}",
                {"gate_id": gate_id, "status": state.status, "target": target.value}
            )

        self.apply_transition(
            state, target, thresholds,
            automated=False,
            reason=reason or f"Operator {actor_id or 'unknown'} requested {target.value}",
            db=db,
            confidence=1.0,
        )
        db.commit()
        db.refresh(state)
        return state

    def _apply_outcome(
        self,
        db: Session,
        gate_id: str,
        decision_event_id: str,
        outcome_success: bool,
        response_time_ms: float
    ) -> AutonomousGate:
        state = self.get_state(db, gate_id)
        decision = decision_log_service.get_decision(db, decision_event_id)
        if decision.event_id != state.event_id or decision.gate_id not in (None, gate_id):
            raise UnknownDecision(
                f"Decision {decision_event_id} does not belong to gate {gate_id}",
                {"decision_event_id": decision_event_id, "gate_id": gate_id}
            )

        already = db.query(GateDecisionOutcome).filter(
            GateDecisionOutcome.decision_event_id == decision_event_id
        ).first()
        if already:
            logger.info(f"Outcome for decision {decision_event_id} already recorded")
            return state

        event = event_context_service.get_event(db, state.event_id)
        thresholds = event_context_service.threshold_config(db, event)
        venue = event_context_service.venue_config(event)
        now = utcnow()
        prior_count = state.decisions_count or 0

        # Daily counter, reset at local midnight of the venue
        if state.last_decision_at is None or (
            self._local_date(state.last_decision_at, venue.timezone) != self._local_date(now, venue.timezone)
        ):
            state.decisions_today = 0
        state.decisions_today = (state.decisions_today or 0) + 1

        success = 1 if outcome_success else 0
        state.decisions_count = prior_count + 1
        state.successful_decisions = (state.successful_decisions or 0) + success
        state.accuracy_rate = round(state.successful_decisions / state.decisions_count, 4)
        state.success_rate = round(
            (1 - SUCCESS_RATE_DECAY) * (state.success_rate if state.success_rate is not None else 1.0)
            + SUCCESS_RATE_DECAY * success, 4
        )
        state.avg_response_time_ms = round(
            ((state.avg_response_time_ms or 0.0) * prior_count + response_time_ms) / state.decisions_count, 2
        )
        state.confidence_score = round(
            state.confidence_score + CONFIDENCE_LEARNING_RATE * (success - state.confidence_score), 4
        )
        state.last_decision_at = now
        state.last_decision_type = decision.event_type
        if state.status == GateStatus.optimizing.value:
            state.window_decisions = (state.window_decisions or 0) + 1
            state.window_successes = (state.window_successes or 0) + success

        db.add(GateDecisionOutcome(
            decision_event_id=decision_event_id,
            gate_id=gate_id,
            outcome_success=outcome_success,
            response_time_ms=response_time_ms,
            recorded_at=now,
        ))

        if response_time_ms > thresholds.velocity_threshold_ms:
            decision_log_service.record(
                db,
                event_id=state.event_id,
                gate_id=gate_id,
                event_type=DecisionEventType.anomaly_detection,
                action="slow decision response",
                reasoning=(
                    f"Response time {response_time_ms}ms exceeds velocity threshold "
                    f"{thresholds.velocity_threshold_ms}ms"
                ),
                confidence_score=state.confidence_score,
                thresholds=thresholds,
                details={"decision_event_id": decision_event_id, "response_time_ms": response_time_ms},
            )

        self._evaluate_automatic_transition(db, state, event, thresholds, prior_count)

        db.commit()
        db.refresh(state)
        return state

    def _evaluate_automatic_transition(
        self,
        db: Session,
        state: AutonomousGate,
        event,
        thresholds: ThresholdConfig,
        prior_count: int
    ) -> None:
        status = GateStatus(state.status)

        if status == GateStatus.learning and prior_count >= thresholds.promotion_sample_size:
            self.apply_transition(
                state, GateStatus.optimizing, thresholds, automated=True, db=db,
                reason=(
                    f"{prior_count} decisions accumulated (promotion sample size "
                    f"{thresholds.promotion_sample_size}); accuracy {state.accuracy_rate}"
                ),
            )
            return

        if status != GateStatus.optimizing or state.window_decisions < thresholds.promotion_sample_size:
            return

        window_accuracy = round(state.window_successes / state.window_decisions, 4)
        if window_accuracy >= thresholds.confidence_threshold:
            self.apply_transition(
                state, GateStatus.active, thresholds, automated=True, db=db,
                reason=(
                    f"Optimizing window accuracy {window_accuracy} over {state.window_decisions} "
                    f"decisions meets threshold {thresholds.confidence_threshold}"
                ),
            )
            return

        self._optimization_cycle(db, state, event, thresholds, window_accuracy)

    def _optimization_cycle(
        self,
        db: Session,
        state: AutonomousGate,
        event,
        thresholds: ThresholdConfig,
        window_accuracy: float
    ) -> None:
        """Window missed the threshold: log the cycle, maybe relax, restart the window."""
        row = event_context_service.event_threshold_row(db, event)
        history = list(row.optimization_history or [])
        last_accuracy = next(
            (h["window_accuracy"] for h in reversed(history) if "window_accuracy" in h), None
        )
        now = utcnow()

        row.performance_improvement = round(window_accuracy - last_accuracy, 4) if last_accuracy is not None else 0.0
        row.last_optimization_at = now
        row.optimization_history = history + [{
            "at": now.isoformat(),
            "source": "optimization",
            "gate_id": state.gate_id,
            "window_accuracy": window_accuracy,
            "window_decisions": state.window_decisions,
        }]
        decision_log_service.record(
            db,
            event_id=state.event_id,
            gate_id=state.gate_id,
            event_type=DecisionEventType.performance_optimization,
            action="optimization cycle below threshold",
            reasoning=(
                f"Window accuracy {window_accuracy} over {state.window_decisions} decisions is below "
                f"threshold {thresholds.confidence_threshold}; gate stays in optimizing"
            ),
            confidence_score=window_accuracy,
            thresholds=thresholds,
            details={"window_accuracy": window_accuracy, "performance_improvement": row.performance_improvement},
        )

        gap = thresholds.confidence_threshold - window_accuracy
        relaxed = round(max(settings.CONFIDENCE_THRESHOLD_MIN, row.confidence_threshold - NEAR_MISS_STEP), 4)
        if gap <= NEAR_MISS_MARGIN and relaxed < row.confidence_threshold:
            previous = row.confidence_threshold
            row.confidence_threshold = relaxed
            decision_log_service.record(
                db,
                event_id=state.event_id,
                gate_id=state.gate_id,
                event_type=DecisionEventType.threshold_adjustment,
                action=f"confidence_threshold {previous} -> {relaxed}",
                reasoning=f"Window accuracy {window_accuracy} within {NEAR_MISS_MARGIN} of threshold",
                confidence_score=window_accuracy,
                thresholds=thresholds,
                details={"from": previous, "to": relaxed},
            )

        state.window_decisions = 0
        state.window_successes = 0

    @staticmethod
    def _append_history(state: AutonomousGate, at: datetime) -> None:
        # New list so the JSON column is flagged dirty; entries are never rewritten
        state.confidence_history = list(state.confidence_history or []) + [{
            "timestamp": at.isoformat(),
            "score": state.confidence_score,
            "status": state.status,
        }]

    @staticmethod
    def _local_date(moment: datetime, tz_name: str):
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown venue timezone {tz_name!r}, using UTC")
            tz = timezone.utc
        return moment.replace(tzinfo=timezone.utc).astimezone(tz).date()

    def new_state(self, gate: Gate, thresholds: ThresholdConfig) -> AutonomousGate:
        """Initial learning state for a freshly created gate."""
        now = utcnow()
        state = AutonomousGate(
            gate_id=gate.id,
            event_id=gate.event_id,
            status=GateStatus.learning.value,
            confidence_score=gate.confidence_score,
            confidence_history=[],
            decisions_count=0,
            decisions_today=0,
            successful_decisions=0,
            accuracy_rate=0.0,
            success_rate=1.0,
            avg_response_time_ms=0.0,
            window_decisions=0,
            window_successes=0,
            learning_started_at=now,
            optimization_count=0,
        )
        self._append_history(state, now)
        return state


# Singleton instance
lifecycle_service = LifecycleService()
