"""
Portfolio Analytics — tracking + stats routes.

Tracking endpoints are hit by the browser beacon and answer with bare
status codes.  Session problems come back as distinct client errors so the
script knows to mint a fresh session id:

    404  session_not_found / visit_not_found
    410  session_expired
"""

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import settings
from api.database import get_db
from api.models.tracking import AnalyticsSession
from api.schemas import (
    BasicPageViewRequest,
    EndRequest,
    ScrollRequest,
    SectionRequest,
    VisitRequest,
)
from api.services.session_service import (
    SessionExpiredError,
    SessionNotFoundError,
    get_or_create_session,
    touch_session,
)
from api.services.stats import compute_stats
from api.services.tracking import (
    create_visit,
    end_visit,
    record_basic_page_view,
    record_scroll,
    record_section,
    resolve_visit,
)

logger = logging.getLogger(__name__)
analytics_router = APIRouter(prefix="/analytics", tags=["analytics"])


async def _live_session(db: AsyncSession, session_id: str) -> AnalyticsSession:
    """Extend the session or raise the matching client error."""
    try:
        return await touch_session(db, session_id)
    except SessionNotFoundError:
        raise HTTPException(404, "session_not_found")
    except SessionExpiredError:
        raise HTTPException(410, "session_expired")


# ═══════════════════════════════════════════════════════
#  Session-based tracking
# ═══════════════════════════════════════════════════════

@analytics_router.post("/visit")
async def track_visit(
    req: VisitRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Start a page visit — creates the session on first contact."""
    user_agent = req.user_agent or request.headers.get("user-agent")
    try:
        session = await get_or_create_session(db, req.session_id, user_agent)
    except SessionExpiredError:
        raise HTTPException(410, "session_expired")

    visit = await create_visit(db, session, req.page, req.referrer)
    logger.info("Tracked visit for page: %s", req.page)

    return {
        "visitId": visit.id,
        "sessionId": session.session_id,
        "expiresAt": session.expires_at.isoformat(),
    }


@analytics_router.post("/scroll", status_code=204)
async def track_scroll(req: ScrollRequest, db: AsyncSession = Depends(get_db)):
    """Record a scroll milestone (25/50/75/100). Repeats are ignored."""
    await _live_session(db, req.session_id)
    visit = await resolve_visit(db, req.session_id, req.visit_id)
    if not visit:
        raise HTTPException(404, "visit_not_found")

    await record_scroll(db, visit, req.scroll_depth_percent)
    return Response(status_code=204)


@analytics_router.post("/section", status_code=204)
async def track_section(req: SectionRequest, db: AsyncSession = Depends(get_db)):
    """Append a section-dwell event."""
    await _live_session(db, req.session_id)
    visit = await resolve_visit(db, req.session_id, req.visit_id)
    if not visit:
        raise HTTPException(404, "visit_not_found")

    await record_section(db, visit, req.section_name, req.duration_ms)
    return Response(status_code=204)


@analytics_router.post("/end", status_code=204)
async def track_end(req: EndRequest, db: AsyncSession = Depends(get_db)):
    """
    Store the visit duration.  Sent via ``navigator.sendBeacon`` on unload,
    so it may arrive after the session lapsed — the duration is still kept,
    but the session is not extended.
    """
    session = await db.get(AnalyticsSession, req.session_id)
    if session is None:
        raise HTTPException(404, "session_not_found")

    visit = await resolve_visit(db, req.session_id, req.visit_id)
    if not visit:
        raise HTTPException(404, "visit_not_found")

    await end_visit(db, visit, req.duration_ms)
    return Response(status_code=204)


# ═══════════════════════════════════════════════════════
#  Cookieless (essential-only) tracking
# ═══════════════════════════════════════════════════════

@analytics_router.post("/basic", status_code=204)
async def track_basic(req: BasicPageViewRequest, db: AsyncSession = Depends(get_db)):
    """Count a page view without any identifier. Always 204."""
    try:
        await record_basic_page_view(db, req.path, req.device)
    except Exception as e:
        logger.warning("Basic page view for %s not recorded: %s", req.path, e)
    return Response(status_code=204)


# ═══════════════════════════════════════════════════════
#  Dashboard
# ═══════════════════════════════════════════════════════

@analytics_router.get("/stats")
async def get_stats(
    password: str = Query("", description="Dashboard shared secret"),
    period: str = Query("week", description="today | week | month | custom | all"),
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
    db: AsyncSession = Depends(get_db),
):
    """Aggregated dashboard numbers for one time window."""
    if not secrets.compare_digest(password.encode(), settings.analytics_password.encode()):
        raise HTTPException(401, "Invalid password")

    try:
        return await compute_stats(
            db,
            period=period,
            start_date=start_date,
            end_date=end_date,
            recent_limit=settings.recent_visits_limit,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
