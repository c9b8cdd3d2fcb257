"""
Gate Engine API - gate derivation, lifecycle and decision review endpoints

Provides:
- GET  /events/{event_id}/quality: Check-in data quality report
- GET  /events/{event_id}/preview: Dry-run gate derivation
- POST /events/{event_id}/execute: Derive and persist gates
- GET  /events/{event_id}/assignments: Best gate per check-in
- GET  /events/{event_id}/decisions: Decision history
- GET  /gates/{gate_id}/state: Autonomous lifecycle state
- POST /gates/{gate_id}/outcomes: Record a decision outcome
- POST /gates/{gate_id}/state: Operator state change (maintenance/pause/resume)
- GET  /decisions/review-queue: Decisions awaiting review
- POST /decisions/{decision_id}/review: Attach a review verdict
- POST /decisions/{decision_id}/correct: Revert a gate creation
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gate_intel.dependencies import get_db, verify_api_key
from gate_intel.errors import GateEngineError
from gate_intel.schemas import (
    CheckinAssignment, DecisionEventSummary, DecisionEventType, ExecuteResult,
    GateStateSummary, GateStatus, PreviewResult, QualityReport, ReviewStatus
)
from gate_intel.services.assignment_service import assignment_service
from gate_intel.services.decision_log_service import decision_log_service
from gate_intel.services.gate_pipeline_service import gate_pipeline_service
from gate_intel.services.lifecycle_service import lifecycle_service
from gate_intel.services.quality_service import quality_service

logger = logging.getLogger(__name__)
router = APIRouter()

ERROR_STATUS = {
    "unknown_event": status.HTTP_404_NOT_FOUND,
    "unknown_gate": status.HTTP_404_NOT_FOUND,
    "unknown_decision": status.HTTP_404_NOT_FOUND,
    "pipeline_busy": status.HTTP_409_CONFLICT,
    "review_conflict": status.HTTP_409_CONFLICT,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "insufficient_data": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "stale_state": status.HTTP_503_SERVICE_UNAVAILABLE,
    "pipeline_execution_failed": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _http_error(error: GateEngineError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=error.to_dict()
    )


# ============================================================
# REQUEST MODELS
# ============================================================

class ExecuteRequest(BaseModel):
    """Request to run the gate pipeline"""
    run_token: str = Field(..., min_length=1, max_length=128, description="Idempotency token for this run")
    timeout_sec: Optional[float] = Field(None, gt=0, description="Bound on the clustering step")
    require_sufficient_data: bool = Field(False, description="Fail instead of warn on insufficient data")

    class Config:
        json_schema_extra = {
            "example": {"run_token": "manual-2026-10-18T09:00"}
        }


class OutcomeRequest(BaseModel):
    """Observed outcome of one gate decision"""
    decision_event_id: str
    outcome_success: bool
    response_time_ms: float = Field(..., ge=0)


class StateChangeRequest(BaseModel):
    """Operator state change; target 'resume' picks learning or optimizing"""
    target: str = Field(..., description="maintenance | paused | optimizing | learning | resume")
    actor_id: Optional[str] = None
    reason: Optional[str] = None


class ReviewRequest(BaseModel):
    verdict: ReviewStatus
    reviewer_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


class CorrectionRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    reason: Optional[str] = None


# ============================================================
# EVENT ENDPOINTS
# ============================================================

@router.get("/events/{event_id}/quality", response_model=QualityReport)
def assess_quality(event_id: str, db: Session = Depends(get_db)):
    """Go/no-go report on the event's check-in data. Never mutates."""
    try:
        return quality_service.assess_quality(db, event_id)
    except GateEngineError as e:
        raise _http_error(e)


@router.get("/events/{event_id}/preview", response_model=PreviewResult)
def preview_gates(
    event_id: str,
    timeout_sec: Optional[float] = Query(None, gt=0),
    db: Session = Depends(get_db)
):
    """Ranked candidates and merge suggestions without persisting anything."""
    try:
        return gate_pipeline_service.preview_gates(db, event_id, timeout=timeout_sec)
    except GateEngineError as e:
        raise _http_error(e)


@router.post("/events/{event_id}/execute", response_model=ExecuteResult)
def execute_gate_pipeline(
    event_id: str,
    request: ExecuteRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """
    Derive and persist gates.

    Replaying a run_token returns the original result. A concurrent run for
    the same event is rejected with 409.
    """
    try:
        return gate_pipeline_service.execute_gate_pipeline(
            db, event_id, request.run_token,
            timeout=request.timeout_sec,
            require_sufficient_data=request.require_sufficient_data
        )
    except GateEngineError as e:
        raise _http_error(e)


@router.get("/events/{event_id}/assignments", response_model=List[CheckinAssignment])
def assign_checkins(event_id: str, db: Session = Depends(get_db)):
    try:
        return assignment_service.assign_checkins(db, event_id)
    except GateEngineError as e:
        raise _http_error(e)


@router.get("/events/{event_id}/decisions", response_model=List[DecisionEventSummary])
def list_decisions(
    event_id: str,
    gate_id: Optional[str] = None,
    event_type: Optional[DecisionEventType] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db)
):
    decisions = decision_log_service.list_decisions(
        db, event_id=event_id, gate_id=gate_id, event_type=event_type, limit=limit
    )
    return [DecisionEventSummary.model_validate(d) for d in decisions]


# ============================================================
# GATE ENDPOINTS
# ============================================================

@router.get("/gates/{gate_id}/state", response_model=GateStateSummary)
def get_gate_state(gate_id: str, db: Session = Depends(get_db)):
    try:
        return GateStateSummary.model_validate(lifecycle_service.get_state(db, gate_id))
    except GateEngineError as e:
        raise _http_error(e)


@router.post("/gates/{gate_id}/outcomes", response_model=GateStateSummary)
def record_decision_outcome(
    gate_id: str,
    request: OutcomeRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    try:
        state = lifecycle_service.record_decision_outcome(
            db, gate_id, request.decision_event_id, request.outcome_success, request.response_time_ms
        )
        return GateStateSummary.model_validate(state)
    except GateEngineError as e:
        raise _http_error(e)


@router.post("/gates/{gate_id}/state", response_model=GateStateSummary)
def set_gate_operational_state(
    gate_id: str,
    request: StateChangeRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    try:
        if request.target == "resume":
            state = lifecycle_service.resume_gate(db, gate_id, request.actor_id)
        else:
            try:
                target = GateStatus(request.target)
            except ValueError:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"Unknown target state: {request.target}"
                )
            state = lifecycle_service.set_gate_operational_state(
                db, gate_id, target, request.actor_id, request.reason
            )
        return GateStateSummary.model_validate(state)
    except GateEngineError as e:
        raise _http_error(e)


# ============================================================
# DECISION REVIEW ENDPOINTS
# ============================================================

@router.get("/decisions/review-queue", response_model=List[DecisionEventSummary])
def review_queue(
    event_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    decisions = decision_log_service.review_queue(db, event_id=event_id, limit=limit)
    return [DecisionEventSummary.model_validate(d) for d in decisions]


@router.post("/decisions/{decision_id}/review", response_model=DecisionEventSummary)
def review_decision(
    decision_id: str,
    request: ReviewRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    try:
        decision = decision_log_service.review_decision(
            db, decision_id, request.verdict, request.reviewer_id, request.notes
        )
        return DecisionEventSummary.model_validate(decision)
    except GateEngineError as e:
        raise _http_error(e)


@router.post("/decisions/{decision_id}/correct", response_model=DecisionEventSummary)
def correct_decision(
    decision_id: str,
    request: CorrectionRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    try:
        correction = decision_log_service.correct_decision(
            db, decision_id, request.actor_id, request.reason
        )
        return DecisionEventSummary.model_validate(correction)
    except GateEngineError as e:
        raise _http_error(e)
