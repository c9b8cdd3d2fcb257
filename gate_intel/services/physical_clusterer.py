"""
Physical Gate Clusterer - density-based clustering of GPS check-ins

DBSCAN over the haversine metric. Check-ins whose reported accuracy is
worse than the venue threshold still take part, but with a sample weight
below 1 so they need more neighbours to form a core point. Each cluster
becomes one physical GateCandidate anchored at the geometric median of
its members.
"""
import logging
import statistics
from typing import List, Optional, Sequence

import numpy as np
from sklearn.cluster import DBSCAN

from gate_intel.config import settings
from gate_intel.schemas import (
    Centroid, CheckinEvent, CheckinOutcome, ClusteringResult, DerivationMethod,
    GateCandidate, GateKind, VenueConfig
)
from gate_intel.services import scoring

logger = logging.getLogger(__name__)


class PhysicalClusterer:

    def cluster(
        self,
        checkins: Sequence[CheckinEvent],
        venue: VenueConfig,
        min_points: Optional[int] = None
    ) -> ClusteringResult:
        """
        Cluster the successful, GPS-usable check-ins of one event.

        Args:
            checkins: All check-ins of the event, in arrival order
            venue: Venue radius and GPS accuracy configuration
            min_points: Override for DBSCAN min_samples

        Returns:
            ClusteringResult whose candidates are ordered by cluster id.
            Never raises for empty or all-noise input.
        """
        successful = [c for c in checkins if c.outcome == CheckinOutcome.success]
        if min_points is None:
            min_points = scoring.min_cluster_points(
                len(successful), settings.MIN_CLUSTER_POINTS, settings.MIN_CLUSTER_FRACTION
            )
        eps_meters = venue.default_radius_meters or settings.DEFAULT_RADIUS_METERS

        usable = self.usable_checkins(successful, venue)
        if not usable:
            return ClusteringResult(min_points=min_points, eps_meters=eps_meters)

        coords = np.radians([[c.latitude, c.longitude] for c in usable])
        weights = np.array([self.sample_weight(c, venue) for c in usable])

        labels = DBSCAN(
            eps=eps_meters / scoring.EARTH_RADIUS_M,
            min_samples=min_points,
            metric="haversine",
            algorithm="ball_tree",
        ).fit(coords, sample_weight=weights).labels_

        candidates = []
        for label in sorted(set(labels) - {-1}):
            indices = np.flatnonzero(labels == label)
            members = [usable[i] for i in indices]
            candidates.append(self.candidate_from_members(
                f"physical-{label + 1:03d}",
                members,
                venue,
                [float(weights[i]) for i in indices],
            ))

        noise_count = int((labels == -1).sum())
        logger.debug(
            f"Physical clustering: {len(usable)} points, {len(candidates)} clusters, "
            f"{noise_count} noise (eps={eps_meters}m, min_points={min_points})"
        )
        return ClusteringResult(
            candidates=candidates,
            input_count=len(usable),
            noise_count=noise_count,
            min_points=min_points,
            eps_meters=eps_meters,
        )

    @staticmethod
    def usable_checkins(checkins: Sequence[CheckinEvent], venue: VenueConfig) -> List[CheckinEvent]:
        return [
            c for c in checkins
            if scoring.is_valid_gps(
                c.latitude, c.longitude, c.gps_accuracy_meters,
                venue.max_usable_gps_accuracy_meters
            )
        ]

    @staticmethod
    def sample_weight(checkin: CheckinEvent, venue: VenueConfig) -> float:
        threshold = venue.gps_accuracy_threshold_meters
        accuracy = checkin.gps_accuracy_meters
        if accuracy is None or accuracy <= threshold:
            return 1.0
        return threshold / accuracy

    def candidate_from_members(
        self,
        cluster_id: str,
        members: List[CheckinEvent],
        venue: VenueConfig,
        weights: Optional[List[float]] = None,
        method: DerivationMethod = DerivationMethod.dbscan_geometric_median
    ) -> GateCandidate:
        """Score a set of GPS check-ins as one physical candidate."""
        if weights is None:
            weights = [self.sample_weight(m, venue) for m in members]
        points = [(m.latitude, m.longitude) for m in members]
        lat, lon = scoring.geometric_median(points, weights)

        radius_p50 = statistics.median(scoring.haversine_meters((lat, lon), p) for p in points)
        accuracy_p50 = statistics.median(m.gps_accuracy_meters for m in members)
        density = scoring.spatial_density(len(members), radius_p50)

        categories = [m.category for m in members]
        counts = {}
        for category in categories:
            counts[category] = counts.get(category, 0) + 1

        return GateCandidate(
            cluster_id=cluster_id,
            kind=GateKind.physical,
            centroid=Centroid(latitude=round(lat, 7), longitude=round(lon, 7)),
            member_count=len(members),
            dominant_category=scoring.dominant_category(categories),
            purity_score=round(scoring.purity(members), 4),
            confidence_score=round(scoring.confidence(len(members), density, accuracy_p50), 4),
            derivation_method=method,
            category_counts=counts,
            category_entropy=round(scoring.category_entropy(categories), 4),
            density=round(density, 4),
            gps_accuracy_p50=round(accuracy_p50, 2),
            radius_p50_meters=round(radius_p50, 2),
            first_seen=min(m.timestamp for m in members),
            last_seen=max(m.timestamp for m in members),
            members=members,
        )


# Singleton instance
physical_clusterer = PhysicalClusterer()
