"""
Decision & Audit Logger

Every mutating action of the engine writes one AutonomousDecisionEvent in
the same transaction as the mutation it describes. Decisions whose
confidence falls below the event's confidence threshold are flagged for
review; the mutation is still applied.

Review is a two-phase protocol: the engine proposes (writes the event),
a human later resolves it with ``review_decision``. Verdicts feed back
into the event's confidence threshold. A rejection never rolls anything
back by itself; ``correct_decision`` is the explicit rollback and is
logged as its own ``auto_correction`` decision.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from gate_intel.config import settings
from gate_intel.db.models import AutonomousDecisionEvent, Gate, utcnow
from gate_intel.errors import InvalidTransition, ReviewConflict, StaleState, UnknownDecision
from gate_intel.schemas import (
    DecisionEventType, EnforcementStrength, GateStatus, ReviewStatus, ThresholdConfig
)
from gate_intel.services.event_context import event_context_service

logger = logging.getLogger(__name__)

# How far one review verdict moves the confidence threshold
REVIEW_THRESHOLD_STEP = {
    ReviewStatus.approved: -0.01,
    ReviewStatus.rejected: 0.02,
    ReviewStatus.modified: 0.0,
}


class DecisionLogService:

    def record(
        self,
        db: Session,
        event_id: str,
        event_type: DecisionEventType,
        action: str,
        reasoning: str,
        confidence_score: float,
        thresholds: ThresholdConfig,
        gate_id: Optional[str] = None,
        automated: bool = True,
        details: Optional[Dict[str, Any]] = None
    ) -> AutonomousDecisionEvent:
        """
        Add a decision event to the session. The caller owns the transaction,
        so the event commits (or rolls back) with the mutation it describes.
        """
        confidence_score = round(max(0.0, min(1.0, confidence_score)), 4)
        decision = AutonomousDecisionEvent(
            event_id=event_id,
            gate_id=gate_id,
            event_type=event_type.value,
            action=action,
            reasoning=reasoning,
            confidence_score=confidence_score,
            automated=automated,
            requires_review=confidence_score < thresholds.confidence_threshold,
            details=details or {},
            created_at=utcnow(),
        )
        db.add(decision)
        db.flush()

        if decision.requires_review:
            logger.info(
                f"Decision {decision.id} ({event_type.value}) queued for review: "
                f"confidence {confidence_score} < {thresholds.confidence_threshold}"
            )
        return decision

    def get_decision(self, db: Session, decision_event_id: str) -> AutonomousDecisionEvent:
        decision = db.query(AutonomousDecisionEvent).filter(
            AutonomousDecisionEvent.id == decision_event_id
        ).first()
        if not decision:
            raise UnknownDecision(
                f"Decision event {decision_event_id} not found",
                {"decision_event_id": decision_event_id}
            )
        return decision

    def review_decision(
        self,
        db: Session,
        decision_event_id: str,
        verdict: ReviewStatus,
        reviewer_id: str,
        notes: Optional[str] = None
    ) -> AutonomousDecisionEvent:
        """
        Attach a human verdict. Only legal while the decision is unreviewed.

        The verdict moves the event's threshold row, which optimization
        cycles and other reviews also write. A concurrent write is retried
        once against the fresh row before giving up with StaleState.
        """
        for attempt in (1, 2):
            try:
                decision = self._review(db, decision_event_id, verdict, reviewer_id, notes)
                break
            except (StaleDataError, IntegrityError):
                db.rollback()
                logger.warning(
                    f"Decision {decision_event_id}: thresholds changed during review (attempt {attempt})"
                )
        else:
            raise StaleState(
                f"Thresholds for decision {decision_event_id} changed concurrently, retry the review",
                {"decision_event_id": decision_event_id}
            )

        logger.info(f"Decision {decision_event_id} reviewed by {reviewer_id}: {verdict.value}")
        return decision

    def _review(
        self,
        db: Session,
        decision_event_id: str,
        verdict: ReviewStatus,
        reviewer_id: str,
        notes: Optional[str]
    ) -> AutonomousDecisionEvent:
        decision = self.get_decision(db, decision_event_id)
        if decision.review_status is not None:
            raise ReviewConflict(
                f"Decision {decision_event_id} already reviewed as {decision.review_status}",
                {"decision_event_id": decision_event_id, "review_status": decision.review_status}
            )

        decision.review_status = verdict.value
        decision.reviewed_by = reviewer_id
        decision.reviewed_at = utcnow()
        decision.review_notes = notes

        self._apply_review_feedback(db, decision, verdict)
        db.commit()
        db.refresh(decision)
        return decision

    def _apply_review_feedback(
        self,
        db: Session,
        decision: AutonomousDecisionEvent,
        verdict: ReviewStatus
    ) -> None:
        """Nudge the event's confidence threshold according to the verdict."""
        step = REVIEW_THRESHOLD_STEP[verdict]
        if step == 0.0:
            return

        event = event_context_service.get_event(db, decision.event_id)
        row = event_context_service.event_threshold_row(db, event)
        previous = row.confidence_threshold
        updated = round(min(settings.CONFIDENCE_THRESHOLD_MAX,
                            max(settings.CONFIDENCE_THRESHOLD_MIN, previous + step)), 4)
        if updated == previous:
            return

        # Log against the thresholds in force before the change
        thresholds = event_context_service.threshold_config(db, event)
        row.confidence_threshold = updated
        row.optimization_history = list(row.optimization_history or []) + [{
            "at": utcnow().isoformat(),
            "source": "review",
            "decision_event_id": decision.id,
            "verdict": verdict.value,
            "confidence_threshold": {"from": previous, "to": updated},
        }]
        self.record(
            db,
            event_id=decision.event_id,
            gate_id=decision.gate_id,
            event_type=DecisionEventType.threshold_adjustment,
            action=f"confidence_threshold {previous} -> {updated}",
            reasoning=(
                f"Reviewer {verdict.value} decision {decision.id} "
                f"({decision.event_type}, confidence {decision.confidence_score})"
            ),
            confidence_score=1.0,
            thresholds=thresholds,
            details={"review_of": decision.id, "from": previous, "to": updated},
        )

    def correct_decision(
        self,
        db: Session,
        decision_event_id: str,
        actor_id: str,
        reason: Optional[str] = None
    ) -> AutonomousDecisionEvent:
        """
        Explicitly roll back a gate creation: enforcement is switched off and
        the gate is paused. Recorded as an ``auto_correction`` decision; the
        original decision is left untouched.
        """
        from gate_intel.services.lifecycle_service import lifecycle_service

        decision = self.get_decision(db, decision_event_id)
        if decision.event_type != DecisionEventType.gate_creation.value or not decision.gate_id:
            raise InvalidTransition(
                f"Only gate_creation decisions can be corrected, got {decision.event_type}",
                {"decision_event_id": decision_event_id}
            )
        gate = db.query(Gate).filter(Gate.id == decision.gate_id).first()
        if not gate:
            raise UnknownDecision(
                f"Gate of decision {decision_event_id} no longer exists",
                {"decision_event_id": decision_event_id}
            )

        thresholds = event_context_service.threshold_config(db, gate.event)
        previous_strength = gate.enforcement_strength
        gate.enforcement_strength = EnforcementStrength.none.value
        gate.should_enforce = False

        correction = self.record(
            db,
            event_id=gate.event_id,
            gate_id=gate.id,
            event_type=DecisionEventType.auto_correction,
            action=f"revert gate creation of '{gate.name}'",
            reasoning=reason or f"Correction requested by {actor_id} for decision {decision.id}",
            confidence_score=1.0,
            thresholds=thresholds,
            automated=False,
            details={
                "corrects": decision.id,
                "actor_id": actor_id,
                "enforcement_strength": {"from": previous_strength, "to": EnforcementStrength.none.value},
            },
        )
        if gate.state is not None and gate.state.status != GateStatus.paused.value:
            lifecycle_service.apply_transition(
                gate.state, GateStatus.paused, thresholds, automated=False, log=False
            )
        db.commit()
        db.refresh(correction)

        logger.info(f"Gate {gate.id} creation reverted by {actor_id} (decision {decision.id})")
        return correction

    def review_queue(
        self,
        db: Session,
        event_id: Optional[str] = None,
        limit: int = 50
    ) -> List[AutonomousDecisionEvent]:
        query = db.query(AutonomousDecisionEvent).filter(
            AutonomousDecisionEvent.requires_review.is_(True),
            AutonomousDecisionEvent.review_status.is_(None)
        )
        if event_id:
            query = query.filter(AutonomousDecisionEvent.event_id == event_id)
        return query.order_by(AutonomousDecisionEvent.created_at.asc()).limit(limit).all()

    def list_decisions(
        self,
        db: Session,
        event_id: Optional[str] = None,
        gate_id: Optional[str] = None,
        event_type: Optional[DecisionEventType] = None,
        limit: int = 100
    ) -> List[AutonomousDecisionEvent]:
        """Decision history for audit, newest first."""
        query = db.query(AutonomousDecisionEvent)
        if event_id:
            query = query.filter(AutonomousDecisionEvent.event_id == event_id)
        if gate_id:
            query = query.filter(AutonomousDecisionEvent.gate_id == gate_id)
        if event_type:
            query = query.filter(AutonomousDecisionEvent.event_type == event_type.value)
        return query.order_by(AutonomousDecisionEvent.created_at.desc()).limit(limit).all()


# Singleton instance
decision_log_service = DecisionLogService()
