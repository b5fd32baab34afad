"""
API Routes — health.
"""

from datetime import datetime, timezone

from fastapi import APIRouter

from api.schemas import HealthResponse

router = APIRouter()


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health():
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version="1.0.0",
    )
