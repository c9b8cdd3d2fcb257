"""
Distance & scoring kernel - pure functions shared by the clusterers,
the derivation pipeline and the assignment service.
"""
import math
from collections import Counter
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from gate_intel.schemas import CheckinEvent

EARTH_RADIUS_M = 6371000.0

# Logistic weights for confidence scoring. Tunable policy; each input must
# keep its sign so the score stays monotonic.
CONFIDENCE_WEIGHTS = {
    "bias": -4.0,
    "sample_size": 1.1,    # per ln(1 + n)
    "density": 0.8,        # per ln(1 + members per 100 m^2)
    "accuracy": 0.02,      # per meter of median GPS accuracy
}

LatLon = Tuple[float, float]


def haversine_meters(a: LatLon, b: LatLon) -> float:
    """Great-circle distance in meters between two (lat, lon) pairs."""
    lat1, lon1 = math.radians(a[0]), math.radians(a[1])
    lat2, lon2 = math.radians(b[0]), math.radians(b[1])
    delta_lat = lat2 - lat1
    delta_lon = lon2 - lon1

    h = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1) * math.cos(lat2) * math.sin(delta_lon / 2) ** 2)
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def is_valid_gps(
    latitude: Optional[float],
    longitude: Optional[float],
    accuracy: Optional[float],
    max_accuracy_meters: float = 100.0
) -> bool:
    """Coordinates are in range, off null island, with a usable accuracy."""
    if latitude is None or longitude is None or accuracy is None:
        return False
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        return False
    if abs(latitude) < 0.0001 and abs(longitude) < 0.0001:
        return False
    return 0 < accuracy <= max_accuracy_meters


def has_coordinates(checkin: CheckinEvent) -> bool:
    return checkin.latitude is not None and checkin.longitude is not None


def dominant_category(categories: Sequence[str]) -> Optional[str]:
    """Most frequent category; ties go to the category seen first."""
    if not categories:
        return None
    counts = Counter(categories)
    first_seen = {}
    for index, category in enumerate(categories):
        first_seen.setdefault(category, index)
    return max(counts, key=lambda c: (counts[c], -first_seen[c]))


def purity(members: Sequence[CheckinEvent]) -> float:
    """Fraction of members in the dominant category.

    Members are expected in arrival order so the tie-break is stable.
    """
    if not members:
        return 0.0
    categories = [m.category for m in members]
    top = dominant_category(categories)
    return categories.count(top) / len(categories)


def category_entropy(categories: Iterable[str]) -> float:
    counts = Counter(categories)
    total = sum(counts.values())
    if total == 0:
        return 0.0
    entropy = 0.0
    for count in counts.values():
        p = count / total
        entropy -= p * math.log(p)
    return entropy


def confidence(sample_size: int, density: float, gps_accuracy_p50: Optional[float]) -> float:
    """
    Weighted logistic combination of cluster evidence, in [0, 1].

    Increasing in sample_size and density, decreasing in gps_accuracy_p50.
    ``gps_accuracy_p50`` is in meters; pass the venue accuracy threshold
    when no GPS is available.
    """
    if sample_size <= 0:
        return 0.0
    accuracy = max(0.0, gps_accuracy_p50 or 0.0)
    z = (CONFIDENCE_WEIGHTS["bias"]
         + CONFIDENCE_WEIGHTS["sample_size"] * math.log1p(sample_size)
         + CONFIDENCE_WEIGHTS["density"] * math.log1p(max(0.0, density))
         - CONFIDENCE_WEIGHTS["accuracy"] * accuracy)
    return 1.0 / (1.0 + math.exp(-z))


def gps_quality_grade(avg_accuracy: Optional[float]) -> str:
    if avg_accuracy is None:
        return "no_gps_data"
    if avg_accuracy <= 15:
        return "excellent"
    if avg_accuracy <= 30:
        return "good"
    if avg_accuracy <= 50:
        return "fair"
    return "poor"


def _project(points: np.ndarray, origin: LatLon) -> np.ndarray:
    """Equirectangular projection to meters around ``origin``."""
    lat0 = math.radians(origin[0])
    x = np.radians(points[:, 1] - origin[1]) * EARTH_RADIUS_M * math.cos(lat0)
    y = np.radians(points[:, 0] - origin[0]) * EARTH_RADIUS_M
    return np.column_stack([x, y])


def geometric_median(
    points: Sequence[LatLon],
    weights: Optional[Sequence[float]] = None,
    tolerance_m: float = 0.01,
    max_iterations: int = 200
) -> LatLon:
    """Weighted geometric median (Weiszfeld) of (lat, lon) points."""
    coords = np.asarray(points, dtype=float)
    if len(coords) == 1:
        return float(coords[0, 0]), float(coords[0, 1])
    w = np.ones(len(coords)) if weights is None else np.asarray(weights, dtype=float)

    origin = (float(np.median(coords[:, 0])), float(np.median(coords[:, 1])))
    xy = _project(coords, origin)
    estimate = np.average(xy, axis=0, weights=w)

    for _ in range(max_iterations):
        distances = np.linalg.norm(xy - estimate, axis=1)
        # A point sitting on the estimate would divide by zero
        distances = np.maximum(distances, 1e-9)
        inverse = w / distances
        updated = (xy * inverse[:, None]).sum(axis=0) / inverse.sum()
        if np.linalg.norm(updated - estimate) < tolerance_m:
            estimate = updated
            break
        estimate = updated

    lat0 = math.radians(origin[0])
    lat = origin[0] + math.degrees(estimate[1] / EARTH_RADIUS_M)
    lon = origin[1] + math.degrees(estimate[0] / (EARTH_RADIUS_M * math.cos(lat0)))
    return float(lat), float(lon)


def spatial_density(member_count: int, radius_p50_meters: float) -> float:
    """Members per 100 m^2 of the disc holding the median member."""
    radius = max(radius_p50_meters, 1.0)
    area_100m2 = math.pi * radius ** 2 / 100.0
    return member_count / area_100m2


def min_cluster_points(total_checkins: int, floor: int = 5, fraction: float = 0.01) -> int:
    """minPoints = max(floor, fraction x total)."""
    return max(floor, math.ceil(fraction * total_checkins))
