"""Main FastAPI application."""

from fastapi import FastAPI
import logging

from identity_sync import __version__
from identity_sync.bootstrap import build_pipeline
from identity_sync.config import settings
from identity_sync.routers import sync_routes

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Identity Sync API",
    description="Multi-tenant identity ingestion, enrichment and channel sync",
    version=__version__,
    redirect_slashes=False
)

app.include_router(sync_routes.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Identity Sync API",
        "version": __version__,
        "docs": "/docs",
        "health": "/api/v1/sync/health"
    }


# ============================================
# STARTUP & SHUTDOWN
# ============================================

@app.on_event("startup")
async def startup_event():
    """Build the pipeline and start the scheduler."""
    logger.info("Starting Identity Sync API...")
    logger.info("=" * 50)

    pipeline = build_pipeline(settings)
    await pipeline.startup(start_scheduler=settings.ENABLE_SCHEDULER)
    app.state.pipeline = pipeline

    if not settings.ENABLE_SCHEDULER:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false) - manual triggers only")
    logger.info("Application started successfully!")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the scheduler and release connections."""
    logger.info("Shutting down Identity Sync API...")
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.shutdown()
