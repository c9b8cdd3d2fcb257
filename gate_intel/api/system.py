"""
System Router - Health checks
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session
import redis

from gate_intel.config import settings
from gate_intel.db.models import utcnow
from gate_intel.dependencies import get_db

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """
    Health check endpoint: database, lock backend and worker queue depth.
    """
    database_status = "unhealthy"
    try:
        db.execute(text("SELECT 1"))
        database_status = "healthy"
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    redis_status = "not_configured"
    worker_queue_depth = 0
    if settings.PIPELINE_LOCK_BACKEND == "redis":
        redis_status = "unhealthy"
        try:
            r = redis.from_url(settings.REDIS_URL)
            r.ping()
            redis_status = "healthy"
            worker_queue_depth = r.llen("celery") or 0
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")

    return {
        "database": database_status,
        "redis": redis_status,
        "lock_backend": settings.PIPELINE_LOCK_BACKEND,
        "worker_queue_depth": worker_queue_depth,
        "timestamp": utcnow().isoformat() + "Z"
    }
