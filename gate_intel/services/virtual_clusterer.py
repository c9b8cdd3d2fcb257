"""
Virtual Gate Clusterer - category + temporal grouping for check-ins
without usable GPS
"""
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Sequence

from gate_intel.config import settings
from gate_intel.schemas import (
    CheckinEvent, CheckinOutcome, ClusteringResult, DerivationMethod,
    GateCandidate, GateKind, VenueConfig
)
from gate_intel.services import scoring

logger = logging.getLogger(__name__)


class VirtualClusterer:
    """
    Groups check-ins by category, then splits each category into sessions
    wherever two consecutive check-ins are further apart than the window.
    Sessions with at least ``min_points`` members become virtual gates.
    """

    def __init__(self, window_minutes: Optional[int] = None):
        self.window = timedelta(minutes=window_minutes or settings.VIRTUAL_SESSION_WINDOW_MIN)

    def cluster(
        self,
        checkins: Sequence[CheckinEvent],
        venue: VenueConfig,
        min_points: Optional[int] = None
    ) -> ClusteringResult:
        successful = [c for c in checkins if c.outcome == CheckinOutcome.success]
        if min_points is None:
            min_points = scoring.min_cluster_points(
                len(successful), settings.MIN_CLUSTER_POINTS, settings.MIN_CLUSTER_FRACTION
            )

        without_gps = [
            c for c in successful
            if not scoring.is_valid_gps(
                c.latitude, c.longitude, c.gps_accuracy_meters,
                venue.max_usable_gps_accuracy_meters
            )
        ]
        if not without_gps:
            return ClusteringResult(min_points=min_points)

        by_category: Dict[str, List[CheckinEvent]] = {}
        for checkin in without_gps:
            by_category.setdefault(checkin.category, []).append(checkin)

        candidates = []
        leftover = 0
        for category in sorted(by_category):
            members = sorted(by_category[category], key=lambda c: (c.timestamp, c.wristband_id, c.id))
            for ordinal, session in enumerate(self._sessions(members), start=1):
                if len(session) < min_points:
                    leftover += len(session)
                    continue
                candidates.append(self._candidate(category, ordinal, session, venue))

        logger.debug(
            f"Virtual clustering: {len(without_gps)} check-ins without GPS, "
            f"{len(candidates)} sessions kept, {leftover} check-ins in small sessions"
        )
        return ClusteringResult(
            candidates=candidates,
            input_count=len(without_gps),
            noise_count=leftover,
            min_points=min_points,
        )

    def _sessions(self, members: List[CheckinEvent]) -> List[List[CheckinEvent]]:
        sessions = [[members[0]]]
        for previous, current in zip(members, members[1:]):
            if current.timestamp - previous.timestamp > self.window:
                sessions.append([])
            sessions[-1].append(current)
        return sessions

    def _candidate(
        self,
        category: str,
        ordinal: int,
        session: List[CheckinEvent],
        venue: VenueConfig
    ) -> GateCandidate:
        first_seen = session[0].timestamp
        last_seen = session[-1].timestamp
        minutes = max((last_seen - first_seen).total_seconds() / 60.0, 1.0)
        density = len(session) / minutes

        # No usable GPS: score as if every reading sat at the venue threshold
        score = scoring.confidence(len(session), density, venue.gps_accuracy_threshold_meters)

        return GateCandidate(
            cluster_id=f"virtual-{category}-{ordinal:03d}",
            kind=GateKind.virtual,
            centroid=None,
            member_count=len(session),
            dominant_category=category,
            purity_score=1.0,
            confidence_score=round(score, 4),
            derivation_method=DerivationMethod.category_temporal,
            category_counts={category: len(session)},
            category_entropy=0.0,
            density=round(density, 4),
            first_seen=first_seen,
            last_seen=last_seen,
            members=session,
        )


# Singleton instance
virtual_clusterer = VirtualClusterer()
