"""Health check endpoints."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.dependencies import get_database
from database.engine import Database

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Liveness: the process is up."""
    return HealthResponse(status="healthy", version="0.1.0")


@router.get("/ready")
async def readiness_check(database: Database = Depends(get_database)):
    """Readiness for load balancers: the database answers."""
    if await database.ping():
        return {"status": "ready", "database": "ok"}
    return JSONResponse(status_code=503, content={"status": "unavailable", "database": "unreachable"})
