"""
Portfolio Analytics — Pydantic request/response schemas.
"""

from pydantic import BaseModel, Field

# Opaque client tokens (crypto.randomUUID() in the beacon script)
SESSION_ID_PATTERN = r"^[A-Za-z0-9_\-]+$"


class _TrackingRequest(BaseModel):
    session_id: str = Field(
        ..., alias="sessionId", min_length=1, max_length=64, pattern=SESSION_ID_PATTERN
    )

    model_config = {"populate_by_name": True}


class VisitRequest(_TrackingRequest):
    page: str = Field(..., min_length=1, max_length=500)
    referrer: str | None = Field(None, max_length=1000)
    user_agent: str | None = Field(None, alias="userAgent", max_length=1000)


class ScrollRequest(_TrackingRequest):
    visit_id: str | None = Field(None, alias="visitId", max_length=36)
    scroll_depth_percent: float = Field(..., alias="scrollDepthPercent", ge=0, le=100)


class SectionRequest(_TrackingRequest):
    visit_id: str | None = Field(None, alias="visitId", max_length=36)
    section_name: str = Field(..., alias="sectionName", min_length=1, max_length=100)
    duration_ms: int = Field(..., alias="durationMs", ge=0)


class EndRequest(_TrackingRequest):
    visit_id: str | None = Field(None, alias="visitId", max_length=36)
    duration_ms: int = Field(..., alias="durationMs", ge=0)


class BasicPageViewRequest(BaseModel):
    """Cookieless ping — path + coarse device only, no identifiers."""
    path: str = Field(..., min_length=1, max_length=500)
    device: str | None = Field(None, max_length=20)


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str = "1.0.0"
    timestamp: str | None = None
