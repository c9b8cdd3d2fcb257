from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm.exc import StaleDataError

from gate_intel.db.models import AdaptiveThreshold, AutonomousDecisionEvent, AutonomousGate, utcnow
from gate_intel.errors import InvalidTransition, StaleState, UnknownDecision, UnknownGate
from gate_intel.schemas import DecisionEventType, GateStatus, ThresholdConfig
from gate_intel.services.decision_log_service import decision_log_service
from gate_intel.services.gate_pipeline_service import gate_pipeline_service
from gate_intel.services.lifecycle_service import lifecycle_service

from tests.factories import VENUE, gps_cluster, make_event, set_thresholds


@pytest.fixture
def gate_id(db_session):
    event = make_event(db_session, timezone="Europe/London")
    set_thresholds(db_session, event, promotion_sample_size=5)
    gps_cluster(db_session, event, VENUE, 100)
    result = gate_pipeline_service.execute_gate_pipeline(db_session, event.id, "run-1")
    return result.created_gates[0].id


def _prediction(db, gate_id: str) -> str:
    state = lifecycle_service.get_state(db, gate_id)
    decision = decision_log_service.record(
        db,
        event_id=state.event_id,
        gate_id=gate_id,
        event_type=DecisionEventType.prediction,
        action="admit wristband",
        reasoning="check-in matched gate",
        confidence_score=0.9,
        thresholds=ThresholdConfig(),
    )
    db.commit()
    return decision.id


def _record(db, gate_id: str, success: bool = True, response_time_ms: float = 120.0) -> AutonomousGate:
    return lifecycle_service.record_decision_outcome(
        db, gate_id, _prediction(db, gate_id), success, response_time_ms
    )


def _transitions(db, gate_id: str):
    return [
        d.details["to"] for d in db.query(AutonomousDecisionEvent).filter(
            AutonomousDecisionEvent.gate_id == gate_id,
            AutonomousDecisionEvent.event_type == DecisionEventType.performance_optimization.value,
            AutonomousDecisionEvent.action.like("transition%"),
        ).order_by(AutonomousDecisionEvent.created_at.asc()).all()
    ]


# ------------------------------------------------------------------
# Automatic transitions
# ------------------------------------------------------------------
def test_learning_promotes_after_sample_size(db_session, gate_id):
    for _ in range(5):
        state = _record(db_session, gate_id)
    assert state.status == GateStatus.learning.value
    assert state.decisions_count == 5
    assert len(state.confidence_history) == 1

    state = _record(db_session, gate_id)

    assert state.status == GateStatus.optimizing.value
    assert state.decisions_count == 6
    assert len(state.confidence_history) == 2
    assert state.confidence_history[-1]["status"] == GateStatus.optimizing.value
    assert _transitions(db_session, gate_id) == ["optimizing"]


def test_optimizing_window_promotes_to_active(db_session, gate_id):
    for _ in range(6):
        _record(db_session, gate_id)
    for _ in range(4):
        state = _record(db_session, gate_id)
        assert state.status == GateStatus.optimizing.value

    state = _record(db_session, gate_id)

    assert state.status == GateStatus.active.value
    assert state.optimization_count == 1
    assert state.last_optimization_at is not None
    assert len(state.confidence_history) == 3
    assert _transitions(db_session, gate_id) == ["optimizing", "active"]


def test_near_miss_window_relaxes_threshold(db_session, gate_id):
    for _ in range(6):
        _record(db_session, gate_id)
    for success in (True, True, True, True, False):
        state = _record(db_session, gate_id, success=success)

    assert state.status == GateStatus.optimizing.value
    assert state.window_decisions == 0

    row = db_session.query(AdaptiveThreshold).filter_by(event_id=state.event_id).one()
    assert row.confidence_threshold == 0.84
    assert row.optimization_history[-1]["window_accuracy"] == 0.8

    adjustments = db_session.query(AutonomousDecisionEvent).filter_by(
        gate_id=gate_id, event_type=DecisionEventType.threshold_adjustment.value
    ).all()
    assert len(adjustments) == 1
    assert adjustments[0].details == {"from": 0.85, "to": 0.84}


def test_statistics_update(db_session, gate_id):
    _record(db_session, gate_id, success=True, response_time_ms=100.0)
    state = _record(db_session, gate_id, success=False, response_time_ms=300.0)

    assert state.decisions_count == 2
    assert state.decisions_today == 2
    assert state.successful_decisions == 1
    assert state.accuracy_rate == 0.5
    assert state.avg_response_time_ms == 200.0
    assert state.success_rate == pytest.approx(0.9, abs=1e-4)
    assert state.last_decision_type == DecisionEventType.prediction.value


def test_duplicate_outcome_is_ignored(db_session, gate_id):
    decision_id = _prediction(db_session, gate_id)
    first = lifecycle_service.record_decision_outcome(db_session, gate_id, decision_id, True, 100.0)
    version = first.version

    again = lifecycle_service.record_decision_outcome(db_session, gate_id, decision_id, False, 900.0)

    assert again.decisions_count == 1
    assert again.successful_decisions == 1
    assert again.version == version


def test_slow_response_logs_anomaly(db_session, gate_id):
    _record(db_session, gate_id, response_time_ms=7500.0)

    anomalies = db_session.query(AutonomousDecisionEvent).filter_by(
        gate_id=gate_id, event_type=DecisionEventType.anomaly_detection.value
    ).all()
    assert len(anomalies) == 1
    assert anomalies[0].details["response_time_ms"] == 7500.0


def test_decisions_today_resets_on_new_local_day(db_session, gate_id):
    _record(db_session, gate_id)
    state = lifecycle_service.get_state(db_session, gate_id)
    state.decisions_today = 7
    state.last_decision_at = utcnow() - timedelta(days=2)
    db_session.commit()

    state = _record(db_session, gate_id)

    assert state.decisions_today == 1
    assert state.decisions_count == 2


def test_local_date_uses_venue_timezone():
    moment = datetime(2026, 7, 5, 3, 0)
    assert lifecycle_service._local_date(moment, "America/Los_Angeles").day == 4
    assert lifecycle_service._local_date(moment, "UTC").day == 5
    assert lifecycle_service._local_date(moment, "Not/AZone").day == 5


def test_outcome_for_foreign_decision(db_session, gate_id):
    other_event = make_event(db_session, name="Other")
    foreign = decision_log_service.record(
        db_session,
        event_id=other_event.id,
        event_type=DecisionEventType.prediction,
        action="admit wristband",
        reasoning="other event",
        confidence_score=0.9,
        thresholds=ThresholdConfig(),
    )
    db_session.commit()

    with pytest.raises(UnknownDecision):
        lifecycle_service.record_decision_outcome(db_session, gate_id, foreign.id, True, 100.0)


def test_unknown_gate(db_session):
    with pytest.raises(UnknownGate):
        lifecycle_service.get_state(db_session, "missing")


# ------------------------------------------------------------------
# External transitions
# ------------------------------------------------------------------
def test_illegal_transition_leaves_state_unchanged(db_session, gate_id):
    before = lifecycle_service.get_state(db_session, gate_id)
    version, history = before.version, list(before.confidence_history)

    with pytest.raises(InvalidTransition):
        lifecycle_service.set_gate_operational_state(db_session, gate_id, GateStatus.active, "ops-1")

    after = lifecycle_service.get_state(db_session, gate_id)
    assert after.status == GateStatus.learning.value
    assert after.version == version
    assert after.confidence_history == history


def test_maintenance_and_back_to_optimizing(db_session, gate_id):
    state = lifecycle_service.set_gate_operational_state(
        db_session, gate_id, GateStatus.maintenance, "ops-1", "scanner offline"
    )
    assert state.status == GateStatus.maintenance.value

    logged = db_session.query(AutonomousDecisionEvent).filter_by(
        gate_id=gate_id, event_type=DecisionEventType.anomaly_detection.value
    ).one()
    assert logged.automated is False
    assert logged.reasoning == "scanner offline"

    state = lifecycle_service.set_gate_operational_state(db_session, gate_id, GateStatus.optimizing, "ops-1")
    assert state.status == GateStatus.optimizing.value
    assert state.window_decisions == 0
    assert len(state.confidence_history) == 3


def test_pause_and_resume(db_session, gate_id):
    _record(db_session, gate_id)
    state = lifecycle_service.set_gate_operational_state(db_session, gate_id, GateStatus.paused, "ops-1")
    assert state.status == GateStatus.paused.value

    with pytest.raises(InvalidTransition):
        lifecycle_service.set_gate_operational_state(db_session, gate_id, GateStatus.optimizing, "ops-1")

    state = lifecycle_service.resume_gate(db_session, gate_id, "ops-1")
    assert state.status == GateStatus.learning.value
    assert state.decisions_count == 1

    with pytest.raises(InvalidTransition):
        lifecycle_service.resume_gate(db_session, gate_id, "ops-1")


def test_resume_returns_to_optimizing_after_enough_decisions(db_session, gate_id):
    for _ in range(6):
        _record(db_session, gate_id)
    lifecycle_service.set_gate_operational_state(db_session, gate_id, GateStatus.paused, "ops-1")

    state = lifecycle_service.resume_gate(db_session, gate_id, "ops-1")

    assert state.status == GateStatus.optimizing.value


def test_automatic_transition_must_be_automatic(db_session, gate_id):
    state = lifecycle_service.get_state(db_session, gate_id)
    with pytest.raises(InvalidTransition):
        lifecycle_service.apply_transition(
            state, GateStatus.active, ThresholdConfig(), automated=True, db=db_session
        )
    assert state.status == GateStatus.learning.value


# ------------------------------------------------------------------
# Optimistic concurrency
# ------------------------------------------------------------------
def _racing_get_state(session_factory, races: int):
    original = lifecycle_service.get_state
    remaining = {"races": races}

    def get_state(db, gate_id):
        state = original(db, gate_id)
        if remaining["races"] > 0:
            remaining["races"] -= 1
            other = session_factory()
            try:
                competing = other.query(AutonomousGate).filter_by(gate_id=gate_id).one()
                competing.avg_response_time_ms = (competing.avg_response_time_ms or 0.0) + 1.0
                other.commit()
            finally:
                other.close()
        return state

    return get_state


def test_concurrent_update_is_retried_once(db_session, session_factory, gate_id, monkeypatch):
    decision_id = _prediction(db_session, gate_id)
    start_version = lifecycle_service.get_state(db_session, gate_id).version
    monkeypatch.setattr(lifecycle_service, "get_state", _racing_get_state(session_factory, races=1))

    state = lifecycle_service.record_decision_outcome(db_session, gate_id, decision_id, True, 100.0)

    assert state.decisions_count == 1
    # One version bump from the competing writer, one from the retried write
    assert state.version == start_version + 2


def test_repeated_conflicts_raise_stale_state(db_session, session_factory, gate_id, monkeypatch):
    decision_id = _prediction(db_session, gate_id)
    monkeypatch.setattr(lifecycle_service, "get_state", _racing_get_state(session_factory, races=2))

    with pytest.raises(StaleState):
        lifecycle_service.record_decision_outcome(db_session, gate_id, decision_id, True, 100.0)


def test_stale_state_is_retryable(db_session, gate_id, monkeypatch):
    calls = []

    def conflicting(*args):
        calls.append(args)
        raise StaleDataError("version mismatch")

    monkeypatch.setattr(lifecycle_service, "_apply_outcome", conflicting)

    with pytest.raises(StaleState) as excinfo:
        lifecycle_service.record_decision_outcome(db_session, gate_id, "decision-1", True, 100.0)
    assert len(calls) == 2
    assert excinfo.value.retryable is True
