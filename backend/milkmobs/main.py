"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from milkmobs.config import settings
from milkmobs.db.database import async_session_maker, init_db, close_db
from milkmobs.api.routes import router
from milkmobs.services.mob_service import build_mob_service
from milkmobs.workers.job_runner import job_runner
from milkmobs.workers.handlers import handle_pipeline, handle_rebuild

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting MilkMobs...")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    service = await build_mob_service(settings, async_session_maker)
    app.state.mob_service = service

    # Register job handlers
    job_runner.configure(service=service)
    job_runner.register_handler("pipeline", handle_pipeline)
    job_runner.register_handler("rebuild", handle_rebuild)
    logger.info("Job handlers registered")

    if settings.enable_rebuild_schedule:
        job_runner.start_schedule(settings.rebuild_interval_seconds, "rebuild")

    yield

    # Shutdown
    logger.info("Shutting down MilkMobs...")
    await job_runner.shutdown()
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Campaign video analysis pipeline and community clustering",
    version="1.0.0",
    lifespan=lifespan
)

# Include API routes
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.app_name,
        "version": "1.0.0",
        "api": "/api",
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "milkmobs.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
