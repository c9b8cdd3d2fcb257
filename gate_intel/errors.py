"""
Error types raised by the gate engine services.

The API layer maps ``code`` onto HTTP status codes and the worker uses
``retryable`` to decide whether a Celery retry makes sense.
"""
from typing import Any, Dict, Optional


class GateEngineError(Exception):
    code = "gate_engine_error"
    retryable = False

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.data,
        }


class InsufficientData(GateEngineError):
    """Check-in data is below the quality minimums. Advisory only."""
    code = "insufficient_data"


class PipelineBusy(GateEngineError):
    """Another execute run holds the lock for this event."""
    code = "pipeline_busy"
    retryable = True


class PipelineExecutionFailed(GateEngineError):
    """The execute transaction was rolled back; nothing was persisted."""
    code = "pipeline_execution_failed"
    retryable = True


class InvalidTransition(GateEngineError):
    code = "invalid_transition"


class StaleState(GateEngineError):
    """Optimistic concurrency conflict that survived one retry."""
    code = "stale_state"
    retryable = True


class ReviewConflict(GateEngineError):
    code = "review_conflict"


class UnknownEvent(GateEngineError):
    code = "unknown_event"


class UnknownGate(GateEngineError):
    code = "unknown_gate"


class UnknownDecision(GateEngineError):
    code = "unknown_decision"
