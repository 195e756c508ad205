"""
FastAPI application entry point.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portfolio_sync.config import settings
from portfolio_sync.api import commits, rate_limit, saves
from portfolio_sync.utils.logging import setup_logging, get_logger

# Configure structured logging
setup_logging(settings.log_level)

logger = get_logger(__name__)

# Create FastAPI application
app = FastAPI(
    title="Portfolio Sync",
    description="Autosave and atomic multi-file commits of portfolio content to GitHub",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint for container orchestration."""
    from portfolio_sync.services.snapshot_store import get_snapshot_store

    return {
        "status": "healthy",
        "version": "0.1.0",
        "snapshot_store": await get_snapshot_store().ping(),
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Portfolio Sync API",
        "version": "0.1.0",
        "docs": "/docs"
    }


# Include API routers
app.include_router(saves.router)
app.include_router(commits.router)
app.include_router(rate_limit.router)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    logger.info("Starting Portfolio Sync API")

    # Redis only holds save baselines; saving works without it
    from portfolio_sync.services.snapshot_store import SnapshotStoreError, get_snapshot_store
    try:
        await get_snapshot_store().initialize()
        logger.info("Snapshot store initialized")
    except SnapshotStoreError as e:
        logger.warning(f"Snapshot store unavailable, baselines will not persist: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup services on application shutdown."""
    logger.info("Shutting down Portfolio Sync API")

    from portfolio_sync.services.save_registry import get_save_registry
    await get_save_registry().close()
    logger.info("Autosave schedulers stopped")

    from portfolio_sync.services.snapshot_store import get_snapshot_store
    await get_snapshot_store().close()
    logger.info("Snapshot store closed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
