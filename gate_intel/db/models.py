"""
SQLAlchemy ORM Models for the Gate Intelligence service

``events`` and ``checkin_logs`` are owned by the check-in platform and are
read-only here. Everything else is written by the gate engine.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime,
    ForeignKey, JSON, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from gate_intel.db.database import Base


JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================
# EXTERNAL (check-in platform)
# ============================================
class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(String(36), index=True)
    name = Column(String(255), nullable=False)
    # Venue configuration
    default_radius_meters = Column(Float)
    gps_accuracy_threshold_meters = Column(Float)
    timezone = Column(String(64))
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    checkins = relationship("CheckinLog", back_populates="event", cascade="all, delete-orphan")
    gates = relationship("Gate", back_populates="event", cascade="all, delete-orphan")


class CheckinLog(Base):
    __tablename__ = "checkin_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    wristband_id = Column(String(64), nullable=False)
    category = Column(String(100), default="General")
    status = Column(String(20), default="success")  # success, denied
    timestamp = Column(DateTime, nullable=False)
    latitude = Column(Float)
    longitude = Column(Float)
    gps_accuracy = Column(Float)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_checkin_logs_event_timestamp', 'event_id', 'timestamp'),
        Index('idx_checkin_logs_event_status', 'event_id', 'status'),
    )

    event = relationship("Event", back_populates="checkins")


# ============================================
# GATE ENGINE
# ============================================
class AdaptiveThreshold(Base):
    """Per-event thresholds, or an organization default when event_id is null"""
    __tablename__ = "adaptive_thresholds"

    id = Column(String(36), primary_key=True, default=new_id)
    organization_id = Column(String(36), index=True)
    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), unique=True)
    duplicate_distance_meters = Column(Float, default=25.0)
    promotion_sample_size = Column(Integer, default=100)
    confidence_threshold = Column(Float, default=0.85)
    velocity_threshold_ms = Column(Integer, default=5000)
    last_optimization_at = Column(DateTime)
    optimization_history = Column(JSONType, default=list)
    performance_improvement = Column(Float, default=0.0)
    version = Column(Integer, nullable=False, server_default="1")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Reviews and optimization cycles read-modify-write the same row
    __mapper_args__ = {"version_id_col": version}


class Gate(Base):
    __tablename__ = "gates"

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False)  # physical, virtual
    latitude = Column(Float)
    longitude = Column(Float)
    dominant_category = Column(String(100), nullable=False)
    member_count = Column(Integer, default=0)
    confidence_score = Column(Float, nullable=False)
    purity_score = Column(Float, nullable=False)
    enforcement_strength = Column(String(20), default="none")  # none, advisory, strict
    should_enforce = Column(Boolean, default=False)
    derivation_method = Column(String(50), nullable=False)
    evidence = Column(JSONType)
    pipeline_run_id = Column(String(36), ForeignKey("gate_pipeline_runs.id"))
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_gates_event', 'event_id'),
    )

    event = relationship("Event", back_populates="gates")
    state = relationship(
        "AutonomousGate", back_populates="gate", uselist=False, cascade="all, delete-orphan"
    )


class AutonomousGate(Base):
    """Lifecycle state and running statistics for one promoted gate"""
    __tablename__ = "autonomous_gates"

    id = Column(String(36), primary_key=True, default=new_id)
    gate_id = Column(String(36), ForeignKey("gates.id", ondelete="CASCADE"), nullable=False, unique=True)
    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False, default="learning")
    confidence_score = Column(Float, default=0.5)
    confidence_history = Column(JSONType, default=list)
    decisions_count = Column(Integer, default=0)
    decisions_today = Column(Integer, default=0)
    successful_decisions = Column(Integer, default=0)
    accuracy_rate = Column(Float, default=0.0)
    success_rate = Column(Float, default=1.0)
    avg_response_time_ms = Column(Float, default=0.0)
    # Outcomes observed since the gate last entered "optimizing"
    window_decisions = Column(Integer, default=0)
    window_successes = Column(Integer, default=0)
    last_decision_at = Column(DateTime)
    last_decision_type = Column(String(50))
    learning_started_at = Column(DateTime, default=utcnow)
    last_optimization_at = Column(DateTime)
    optimization_count = Column(Integer, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('learning', 'optimizing', 'active', 'maintenance', 'paused')",
            name="ck_autonomous_gates_status",
        ),
        Index('idx_autonomous_gates_event', 'event_id'),
    )
    __mapper_args__ = {"version_id_col": version}

    gate = relationship("Gate", back_populates="state")


class AutonomousDecisionEvent(Base):
    """Append-only audit record of one autonomous action"""
    __tablename__ = "autonomous_decision_events"

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    gate_id = Column(String(36), ForeignKey("gates.id", ondelete="SET NULL"))
    event_type = Column(String(50), nullable=False)
    action = Column(Text, nullable=False)
    reasoning = Column(Text, nullable=False)
    confidence_score = Column(Float, nullable=False)
    automated = Column(Boolean, default=True)
    requires_review = Column(Boolean, default=False)
    # Review verdict (attached later by a human)
    review_status = Column(String(20))  # approved, rejected, modified
    reviewed_by = Column(String(64))
    reviewed_at = Column(DateTime)
    review_notes = Column(Text)
    details = Column(JSONType)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "(review_status IS NULL AND reviewed_by IS NULL) OR "
            "(review_status IS NOT NULL AND reviewed_by IS NOT NULL)",
            name="ck_decision_review_complete",
        ),
        Index('idx_decision_events_event', 'event_id'),
        Index('idx_decision_events_gate', 'gate_id'),
        Index('idx_decision_events_review', 'requires_review', 'review_status'),
        Index('idx_decision_events_created', 'created_at'),
    )


class GatePipelineRun(Base):
    """Ledger of executed pipeline runs, keyed by (event_id, run_token)"""
    __tablename__ = "gate_pipeline_runs"

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    run_token = Column(String(128), nullable=False)
    status = Column(String(20), default="completed")
    gate_ids = Column(JSONType, default=list)
    decision_event_ids = Column(JSONType, default=list)
    summary = Column(JSONType)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('event_id', 'run_token', name='unique_event_run_token'),
    )


class GateDecisionOutcome(Base):
    """Observed outcome of one decision, fed into the lifecycle manager"""
    __tablename__ = "gate_decision_outcomes"

    id = Column(String(36), primary_key=True, default=new_id)
    decision_event_id = Column(
        String(36), ForeignKey("autonomous_decision_events.id", ondelete="CASCADE"),
        nullable=False, unique=True
    )
    gate_id = Column(String(36), ForeignKey("gates.id", ondelete="CASCADE"), nullable=False)
    outcome_success = Column(Boolean, nullable=False)
    response_time_ms = Column(Float)
    recorded_at = Column(DateTime, default=utcnow)
