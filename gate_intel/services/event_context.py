"""
Event Context Service - read accessors for the check-in platform tables

Resolves the check-ins, venue configuration and adaptive thresholds of one
event into immutable values that are passed into each engine invocation.
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from gate_intel.config import settings
from gate_intel.db.models import AdaptiveThreshold, CheckinLog, Event
from gate_intel.errors import UnknownEvent
from gate_intel.schemas import CheckinEvent, CheckinOutcome, ThresholdConfig, VenueConfig

logger = logging.getLogger(__name__)


class EventContextService:
    """Builds the per-invocation inputs for one event."""

    def get_event(self, db: Session, event_id: str) -> Event:
        event = db.query(Event).filter(Event.id == event_id).first()
        if not event:
            raise UnknownEvent(f"Event {event_id} not found", {"event_id": event_id})
        return event

    def load_checkins(self, db: Session, event_id: str) -> List[CheckinEvent]:
        """All check-ins of the event in a stable arrival order."""
        rows = db.query(CheckinLog).filter(
            CheckinLog.event_id == event_id
        ).order_by(
            CheckinLog.timestamp.asc(),
            CheckinLog.wristband_id.asc(),
            CheckinLog.id.asc()
        ).all()

        return [
            CheckinEvent(
                id=row.id,
                event_id=row.event_id,
                wristband_id=row.wristband_id,
                timestamp=row.timestamp,
                latitude=row.latitude,
                longitude=row.longitude,
                gps_accuracy_meters=row.gps_accuracy,
                category=row.category or "General",
                outcome=CheckinOutcome(row.status or "success"),
            )
            for row in rows
        ]

    def venue_config(self, event: Event) -> VenueConfig:
        return VenueConfig(
            default_radius_meters=event.default_radius_meters or settings.DEFAULT_RADIUS_METERS,
            gps_accuracy_threshold_meters=(
                event.gps_accuracy_threshold_meters or settings.GPS_ACCURACY_THRESHOLD_METERS
            ),
            max_usable_gps_accuracy_meters=settings.MAX_USABLE_GPS_ACCURACY_METERS,
            timezone=event.timezone or settings.DEFAULT_VENUE_TIMEZONE,
        )

    def threshold_row(self, db: Session, event: Event) -> Optional[AdaptiveThreshold]:
        """Event-level thresholds, falling back to the organization default."""
        row = db.query(AdaptiveThreshold).filter(
            AdaptiveThreshold.event_id == event.id
        ).first()
        if row or not event.organization_id:
            return row
        return db.query(AdaptiveThreshold).filter(
            AdaptiveThreshold.organization_id == event.organization_id,
            AdaptiveThreshold.event_id.is_(None)
        ).first()

    def threshold_config(self, db: Session, event: Event) -> ThresholdConfig:
        row = self.threshold_row(db, event)
        if not row:
            return ThresholdConfig(
                duplicate_distance_meters=settings.DUPLICATE_DISTANCE_METERS,
                promotion_sample_size=settings.PROMOTION_SAMPLE_SIZE,
                confidence_threshold=settings.CONFIDENCE_THRESHOLD,
                velocity_threshold_ms=settings.VELOCITY_THRESHOLD_MS,
            )
        return ThresholdConfig(
            duplicate_distance_meters=row.duplicate_distance_meters,
            promotion_sample_size=row.promotion_sample_size,
            confidence_threshold=row.confidence_threshold,
            velocity_threshold_ms=row.velocity_threshold_ms,
        )

    def event_threshold_row(self, db: Session, event: Event) -> AdaptiveThreshold:
        """
        Event-level row for mutation. Copies the organization default (or the
        configured fallbacks) the first time an event's thresholds change.
        """
        row = db.query(AdaptiveThreshold).filter(
            AdaptiveThreshold.event_id == event.id
        ).first()
        if row:
            return row

        current = self.threshold_config(db, event)
        row = AdaptiveThreshold(
            organization_id=event.organization_id,
            event_id=event.id,
            duplicate_distance_meters=current.duplicate_distance_meters,
            promotion_sample_size=current.promotion_sample_size,
            confidence_threshold=current.confidence_threshold,
            velocity_threshold_ms=current.velocity_threshold_ms,
            optimization_history=[],
            performance_improvement=0.0,
        )
        db.add(row)
        db.flush()
        logger.info(f"Created event-level adaptive thresholds for event {event.id}")
        return row


# Singleton instance
event_context_service = EventContextService()
