"""Main FastAPI application with api/worker mode switching."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends

from .config import settings
from .pipeline import Pipeline
from .routers import monitors_router, ops_router
from .routers.deps import get_pipeline
from .schemas.ops import HealthResponse
from .stores import NotificationLogStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - startup and shutdown."""
        logger.info(f"Starting PulseCheck in {settings.mode.upper()} mode")
        app.state.pipeline = pipeline or Pipeline(settings)

        # 'api' enqueues and schedules; workers run in separate 'worker' processes
        await app.state.pipeline.start(
            scheduler=True,
            workers=settings.mode == "all",
        )
        logger.info("Pipeline started")

        yield

        await app.state.pipeline.stop()

    app = FastAPI(
        title="PulseCheck",
        description="Scheduled HTTP checks with deduplicated e-mail alerts",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(monitors_router)
    app.include_router(ops_router)

    # Health check endpoint
    @app.get("/health", response_model=HealthResponse)
    async def health_check(pipeline: Pipeline = Depends(get_pipeline)):
        drift = await pipeline.scheduler.find_drift()
        async with pipeline.db.session() as session:
            unsent = await NotificationLogStore().list_unsent(session, limit=1000)
        queues = {
            pipeline.check_queue.name: await pipeline.check_queue.counts(),
            pipeline.notification_queue.name: await pipeline.notification_queue.counts(),
        }
        degraded = drift.has_drift or any(q["failed"] for q in queues.values()) or bool(unsent)
        return HealthResponse(
            status="degraded" if degraded else "healthy",
            mode=settings.mode,
            queues=queues,
            schedule_drift=drift.has_drift,
            unsent_notifications=len(unsent),
        )

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
