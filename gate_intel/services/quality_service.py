"""
Quality Assessor - go/no-go report on the check-in data of one event

Runs before clustering. The report is advisory: an ``insufficient``
recommendation never blocks a preview, it only warns that confidence in
any derived gate will be low.
"""
import logging
import statistics
from collections import Counter
from typing import List, Optional

import numpy as np
from sqlalchemy.orm import Session

from gate_intel.config import settings
from gate_intel.db.models import utcnow
from gate_intel.schemas import (
    CheckinEvent, CheckinOutcome, QualityRecommendation, QualityReport, VenueConfig
)
from gate_intel.services.event_context import event_context_service
from gate_intel.services.scoring import EARTH_RADIUS_M, gps_quality_grade, has_coordinates, is_valid_gps

logger = logging.getLogger(__name__)


class QualityService:
    """Side-effect free data quality checks"""

    def __init__(
        self,
        min_gps_checkins: Optional[int] = None,
        min_categories: Optional[int] = None
    ):
        self.min_gps_checkins = min_gps_checkins or settings.QUALITY_MIN_GPS_CHECKINS
        self.min_categories = min_categories or settings.QUALITY_MIN_CATEGORIES

    def assess_quality(self, db: Session, event_id: str) -> QualityReport:
        """Load the event's check-ins and assess them."""
        event = event_context_service.get_event(db, event_id)
        checkins = event_context_service.load_checkins(db, event_id)
        return self.assess(event_id, checkins, event_context_service.venue_config(event))

    def assess(
        self,
        event_id: str,
        checkins: List[CheckinEvent],
        venue: VenueConfig
    ) -> QualityReport:
        successful = [c for c in checkins if c.outcome == CheckinOutcome.success]
        with_gps = [c for c in checkins if has_coordinates(c)]
        usable = [
            c for c in successful
            if is_valid_gps(c.latitude, c.longitude, c.gps_accuracy_meters,
                            venue.max_usable_gps_accuracy_meters)
        ]

        accuracies = [c.gps_accuracy_meters for c in with_gps if c.gps_accuracy_meters is not None]
        avg_accuracy = round(statistics.fmean(accuracies), 2) if accuracies else None

        category_counts = dict(sorted(Counter(c.category for c in successful).items()))
        spread = self._location_spread(usable)

        recommendation = self._recommend(len(usable), len(category_counts))
        strategy = self._strategy(len(usable), spread, len(successful))

        report = QualityReport(
            event_id=event_id,
            total_checkins=len(checkins),
            successful_checkins=len(successful),
            denied_checkins=len(checkins) - len(successful),
            checkins_with_gps=len(with_gps),
            checkins_with_usable_gps=len(usable),
            avg_gps_accuracy_meters=avg_accuracy,
            gps_quality=gps_quality_grade(avg_accuracy),
            location_spread_meters=spread,
            unique_wristbands=len({c.wristband_id for c in checkins}),
            category_counts=category_counts,
            category_count=len(category_counts),
            recommendation=recommendation,
            recommended_strategy=strategy,
            messages=self._messages(len(successful), len(usable), len(category_counts), spread),
            generated_at=utcnow(),
        )

        if recommendation == QualityRecommendation.insufficient:
            logger.warning(
                f"Event {event_id}: insufficient check-in data "
                f"({len(usable)} usable GPS check-ins, {len(category_counts)} categories); "
                f"derived gates will have low confidence"
            )
        return report

    def _recommend(self, usable_gps: int, categories: int) -> QualityRecommendation:
        if usable_gps >= self.min_gps_checkins and categories >= self.min_categories:
            return QualityRecommendation.sufficient
        if usable_gps >= max(1, self.min_gps_checkins // 3):
            return QualityRecommendation.marginal
        return QualityRecommendation.insufficient

    def _strategy(self, usable_gps: int, spread: Optional[float], successful: int) -> str:
        if usable_gps >= settings.MIN_CLUSTER_POINTS and spread is not None and spread >= 1.0:
            return "physical"
        if successful >= settings.MIN_CLUSTER_POINTS:
            return "virtual"
        return "insufficient_data"

    @staticmethod
    def _location_spread(usable: List[CheckinEvent]) -> Optional[float]:
        """Mean of the latitude and longitude standard deviations, in meters."""
        if len(usable) < 2:
            return None
        coords = np.array([[c.latitude, c.longitude] for c in usable], dtype=float)
        lat_std_m = np.radians(coords[:, 0].std()) * EARTH_RADIUS_M
        lon_std_m = (np.radians(coords[:, 1].std()) * EARTH_RADIUS_M
                     * np.cos(np.radians(coords[:, 0].mean())))
        return round(float((lat_std_m + lon_std_m) / 2), 2)

    def _messages(
        self,
        successful: int,
        usable_gps: int,
        categories: int,
        spread: Optional[float]
    ) -> List[str]:
        messages = []
        if successful < 50:
            messages.append("Need at least 50 successful check-ins for reliable gate discovery")
        if usable_gps < self.min_gps_checkins:
            messages.append(
                f"Only {usable_gps} check-ins carry usable GPS "
                f"(minimum {self.min_gps_checkins}) - virtual gates recommended"
            )
        if categories < self.min_categories:
            messages.append(
                f"Only {categories} check-in categories observed (minimum {self.min_categories})"
            )
        if spread is not None and spread < 1.0:
            messages.append("All check-ins at the same location - virtual gates recommended")
        if not messages:
            messages.append("Gate discovery ready")
        return messages


# Singleton instance
quality_service = QualityService()
