"""
FastAPI dependencies for the gate engine routers
"""
import secrets
from typing import Generator, Optional
from fastapi import Header, HTTPException, status
from sqlalchemy.orm import Session
from gate_intel.db.database import SessionLocal
from gate_intel.config import settings


def get_db() -> Generator[Session, None, None]:
    """One session per request, closed after the response"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def verify_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """Mutating gate engine endpoints require the internal API key"""
    if not x_api_key or not secrets.compare_digest(x_api_key, settings.API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unauthorized", "message": "Invalid or missing X-API-Key header"}
        )
    return x_api_key
