"""
FastAPI Application — entry point.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.config import settings
from api.database import init_db, close_db
from api.routes import router
from api.routes.analytics import analytics_router
from api.services.retention import catch_up_if_needed, retention_loop

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)

# Localhost, private LAN ranges, .local / hyphenated machine names
DEV_ORIGIN_REGEX = (
    r"https?://("
    r"localhost|127\.0\.0\.1"
    r"|192\.168\.\d{1,3}\.\d{1,3}"
    r"|10\.\d{1,3}\.\d{1,3}\.\d{1,3}"
    r"|172\.(1[6-9]|2[0-9]|3[0-1])\.\d{1,3}\.\d{1,3}"
    r"|[A-Za-z0-9\-]+\.local"
    r"|[A-Za-z0-9]+(-[A-Za-z0-9]+)+"
    r")(:\d+)?"
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("🚀 Starting Portfolio Analytics API v1.0.0")
    await init_db()
    logger.info("✅ Database ready")

    # Aggregate yesterday now if the 02:00 run was missed
    await catch_up_if_needed()

    retention_task = asyncio.create_task(retention_loop())

    yield

    # Shutdown
    retention_task.cancel()
    try:
        await retention_task
    except asyncio.CancelledError:
        pass
    await close_db()
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="Portfolio Analytics API",
    description=(
        "Privacy-first analytics for the portfolio site — anonymous sessions, "
        "scroll/section engagement, nightly rollups and retention."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# CORS: LAN origins in development, the site only in production
if settings.is_development:
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=DEV_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(router)
app.include_router(analytics_router, prefix="/api")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Portfolio Analytics API",
        "version": "1.0.0",
        "docs": "/docs",
    }
