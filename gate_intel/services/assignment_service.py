"""
Check-in Assignment Service - best gate for each successful check-in

Read-only: check-ins are never modified. Physical gates match by
haversine distance, virtual gates by category.
"""
import logging
from typing import List

from sqlalchemy.orm import Session

from gate_intel.config import settings
from gate_intel.db.models import Gate
from gate_intel.schemas import CheckinAssignment, CheckinOutcome, GateKind
from gate_intel.services import scoring
from gate_intel.services.event_context import event_context_service

logger = logging.getLogger(__name__)


class AssignmentService:

    def assign_checkins(self, db: Session, event_id: str) -> List[CheckinAssignment]:
        event = event_context_service.get_event(db, event_id)
        venue = event_context_service.venue_config(event)
        checkins = event_context_service.load_checkins(db, event_id)
        gates = db.query(Gate).filter(Gate.event_id == event_id).order_by(Gate.id.asc()).all()

        max_distance = settings.ASSIGNMENT_MAX_DISTANCE_METERS
        assignments = []
        for checkin in checkins:
            if checkin.outcome != CheckinOutcome.success:
                continue
            usable_gps = scoring.is_valid_gps(
                checkin.latitude, checkin.longitude, checkin.gps_accuracy_meters,
                venue.max_usable_gps_accuracy_meters
            )

            matches = []
            for gate in gates:
                if gate.kind == GateKind.physical.value and usable_gps and gate.latitude is not None:
                    distance = scoring.haversine_meters(
                        (gate.latitude, gate.longitude), (checkin.latitude, checkin.longitude)
                    )
                    if distance <= max_distance:
                        matches.append((1.0 - distance / max_distance, distance, gate.id, "gps_haversine"))
                elif gate.kind == GateKind.virtual.value and gate.dominant_category == checkin.category:
                    matches.append((gate.confidence_score, 0.0, gate.id, "category_match"))

            matches = [m for m in matches if m[0] >= settings.ASSIGNMENT_MIN_CONFIDENCE]
            if not matches:
                continue
            confidence, distance, gate_id, method = min(matches, key=lambda m: (-m[0], m[1], m[2]))
            assignments.append(CheckinAssignment(
                checkin_id=checkin.id,
                gate_id=gate_id,
                method=method,
                confidence=round(confidence, 4),
                distance_meters=round(distance, 2) if method == "gps_haversine" else None,
            ))

        logger.debug(f"Assigned {len(assignments)} of {len(checkins)} check-ins for event {event_id}")
        return assignments


# Singleton instance
assignment_service = AssignmentService()
