"""
Gate Intelligence service - FastAPI entry point

Run with: uvicorn gate_intel.main:app
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gate_intel import __version__
from gate_intel.config import settings
from gate_intel.api import gates, system
from gate_intel.db.database import Base, engine
from gate_intel.errors import GateEngineError

logging.basicConfig(
    level=logging.DEBUG if settings.APP_DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        f"Starting Gate Intelligence service {__version__} "
        f"(env={settings.APP_ENV}, lock backend={settings.PIPELINE_LOCK_BACKEND})"
    )
    if settings.APP_ENV == "development":
        Base.metadata.create_all(bind=engine)
        logger.info("Gate engine tables ensured")
    yield
    logger.info("Gate Intelligence service stopped")


app = FastAPI(
    title="Gate Intelligence Service",
    description="Gate derivation and autonomous gate management for event check-in",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GateEngineError)
async def gate_engine_error_handler(request: Request, exc: GateEngineError):
    """Engine errors that escape a route keep their code and retry hint."""
    status_code = gates.ERROR_STATUS.get(exc.code, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


app.include_router(system.router, tags=["System"])
app.include_router(gates.router, prefix="/gate-engine", tags=["Gate Engine"])


@app.get("/")
async def root():
    return {
        "service": "Gate Intelligence",
        "version": __version__,
        "status": "running",
        "docs": "/docs"
    }
