"""
Pydantic schemas for the gate engine.

Enums describe lifecycle states and decision types; the models are the
typed values passed between the clusterers, the derivation pipeline and
the API layer.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================
# ENUMS
# ============================================
class CheckinOutcome(str, Enum):
    success = "success"
    denied = "denied"


class GateKind(str, Enum):
    physical = "physical"
    virtual = "virtual"


class DerivationMethod(str, Enum):
    dbscan_geometric_median = "dbscan_geometric_median"
    dbscan_merged = "dbscan_merged"
    category_temporal = "category_temporal"


class EnforcementStrength(str, Enum):
    none = "none"
    advisory = "advisory"
    strict = "strict"


class GateStatus(str, Enum):
    learning = "learning"
    optimizing = "optimizing"
    active = "active"
    maintenance = "maintenance"
    paused = "paused"


class DecisionEventType(str, Enum):
    gate_creation = "gate_creation"
    gate_merge = "gate_merge"
    threshold_adjustment = "threshold_adjustment"
    anomaly_detection = "anomaly_detection"
    performance_optimization = "performance_optimization"
    auto_correction = "auto_correction"
    prediction = "prediction"


class ReviewStatus(str, Enum):
    approved = "approved"
    rejected = "rejected"
    modified = "modified"


class QualityRecommendation(str, Enum):
    sufficient = "sufficient"
    marginal = "marginal"
    insufficient = "insufficient"


class MergeAction(str, Enum):
    merge = "merge"
    keep_separate = "keep_separate"


# ============================================
# INPUTS
# ============================================
class CheckinEvent(BaseModel):
    """One raw check-in as supplied by the check-in platform."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    event_id: str
    wristband_id: str
    timestamp: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    gps_accuracy_meters: Optional[float] = None
    category: str = "General"
    outcome: CheckinOutcome = CheckinOutcome.success


class VenueConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    default_radius_meters: float = 30.0
    gps_accuracy_threshold_meters: float = 50.0
    max_usable_gps_accuracy_meters: float = 100.0
    timezone: str = "UTC"


class ThresholdConfig(BaseModel):
    """Adaptive thresholds frozen for the duration of one invocation."""
    model_config = ConfigDict(frozen=True)

    duplicate_distance_meters: float = 25.0
    promotion_sample_size: int = 100
    confidence_threshold: float = 0.85
    velocity_threshold_ms: int = 5000


# ============================================
# CLUSTERING OUTPUT
# ============================================
class Centroid(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float


class GateCandidate(BaseModel):
    cluster_id: str
    kind: GateKind
    centroid: Optional[Centroid] = None
    member_count: int
    dominant_category: str
    purity_score: float
    confidence_score: float
    derivation_method: DerivationMethod
    category_counts: Dict[str, int] = Field(default_factory=dict)
    category_entropy: float = 0.0
    density: float = 0.0
    gps_accuracy_p50: Optional[float] = None
    radius_p50_meters: Optional[float] = None
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    members: List[CheckinEvent] = Field(default_factory=list, exclude=True, repr=False)


class ClusteringResult(BaseModel):
    candidates: List[GateCandidate] = Field(default_factory=list)
    input_count: int = 0
    noise_count: int = 0
    min_points: int = 0
    eps_meters: Optional[float] = None


class MergeSuggestion(BaseModel):
    cluster_a: str
    cluster_b: str
    distance_meters: float
    purity_a: float
    purity_b: float
    combined_purity: float
    purity_floor: float
    recommended_action: MergeAction


class RankedGate(BaseModel):
    rank: int
    cluster_id: str
    kind: GateKind
    proposed_name: str
    dominant_category: str
    member_count: int
    confidence_score: float
    purity_score: float
    enforcement_strength: EnforcementStrength
    should_enforce: bool
    centroid: Optional[Centroid] = None


class DuplicateCandidate(BaseModel):
    """A candidate that an existing gate already covers; execute skips it."""
    cluster_id: str
    existing_gate_id: str
    existing_gate_name: str


# ============================================
# REPORTS
# ============================================
class QualityReport(BaseModel):
    event_id: str
    total_checkins: int
    successful_checkins: int
    denied_checkins: int
    checkins_with_gps: int
    checkins_with_usable_gps: int
    avg_gps_accuracy_meters: Optional[float] = None
    gps_quality: str
    location_spread_meters: Optional[float] = None
    unique_wristbands: int
    category_counts: Dict[str, int] = Field(default_factory=dict)
    category_count: int
    recommendation: QualityRecommendation
    recommended_strategy: str
    messages: List[str] = Field(default_factory=list)
    generated_at: datetime


class PreviewResult(BaseModel):
    event_id: str
    quality_report: QualityReport
    physical_candidates: List[GateCandidate] = Field(default_factory=list)
    virtual_candidates: List[GateCandidate] = Field(default_factory=list)
    merge_suggestions: List[MergeSuggestion] = Field(default_factory=list)
    ranked_gates: List[RankedGate] = Field(default_factory=list)
    duplicate_candidates: List[DuplicateCandidate] = Field(default_factory=list)
    noise_points: int = 0
    over_segmented: bool = False
    warnings: List[str] = Field(default_factory=list)
    timed_out: bool = False


class ConfidencePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    score: float
    status: GateStatus


class GateSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    name: str
    kind: GateKind
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    dominant_category: str
    member_count: int
    confidence_score: float
    purity_score: float
    enforcement_strength: EnforcementStrength
    should_enforce: bool
    derivation_method: DerivationMethod
    created_at: Optional[datetime] = None


class DecisionEventSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    gate_id: Optional[str] = None
    event_type: DecisionEventType
    action: str
    reasoning: str
    confidence_score: float
    automated: bool
    requires_review: bool
    review_status: Optional[ReviewStatus] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class GateStateSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    gate_id: str
    event_id: str
    status: GateStatus
    confidence_score: float
    confidence_history: List[ConfidencePoint] = Field(default_factory=list)
    decisions_count: int
    decisions_today: int
    accuracy_rate: float
    success_rate: float
    avg_response_time_ms: float
    learning_started_at: Optional[datetime] = None
    last_optimization_at: Optional[datetime] = None
    optimization_count: int
    version: int


class ExecuteResult(BaseModel):
    event_id: str
    run_token: str
    replayed: bool = False
    created_gates: List[GateSummary] = Field(default_factory=list)
    decision_events: List[DecisionEventSummary] = Field(default_factory=list)
    skipped_candidates: List[str] = Field(default_factory=list)
    merged_clusters: List[List[str]] = Field(default_factory=list)


class CheckinAssignment(BaseModel):
    checkin_id: str
    gate_id: str
    method: str
    confidence: float
    distance_meters: Optional[float] = None
