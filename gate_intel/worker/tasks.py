"""
Celery Tasks for periodic gate derivation
"""
import logging
from typing import Any, Dict, Optional
from celery import shared_task
from gate_intel.db.database import SessionLocal
from gate_intel.db.models import utcnow
from gate_intel.errors import GateEngineError, PipelineBusy

logger = logging.getLogger(__name__)


def get_db_session():
    """Get database session for tasks"""
    return SessionLocal()


def scheduled_run_token(event_id: str) -> str:
    """One token per event per hour, so repeated triggers replay."""
    return f"scheduled:{event_id}:{utcnow():%Y%m%d%H}"


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def run_gate_pipeline(self, event_id: str, run_token: Optional[str] = None) -> Dict[str, Any]:
    """
    Execute the gate pipeline for one event.

    - Busy events are skipped (another run is in flight)
    - Retryable failures are retried
    - Replayed tokens return the stored result
    """
    from gate_intel.services.gate_pipeline_service import gate_pipeline_service

    run_token = run_token or scheduled_run_token(event_id)
    db = get_db_session()
    try:
        result = gate_pipeline_service.execute_gate_pipeline(db, event_id, run_token)
        logger.info(
            f"Scheduled gate pipeline for event {event_id}: "
            f"{len(result.created_gates)} gates (replayed={result.replayed})"
        )
        return result.model_dump(mode="json")

    except PipelineBusy as e:
        logger.info(f"Skipping gate pipeline for event {event_id}: {e.message}")
        return {"event_id": event_id, "run_token": run_token, "skipped": True, **e.to_dict()}

    except GateEngineError as e:
        if e.retryable:
            logger.warning(f"Gate pipeline for event {event_id} failed, retrying: {e.message}")
            raise self.retry(exc=e)
        logger.error(f"Gate pipeline for event {event_id} failed: {e.message}")
        return {"event_id": event_id, "run_token": run_token, **e.to_dict()}

    finally:
        db.close()
