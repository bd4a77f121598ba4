import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from jobqueue.settings import settings
from jobqueue.registry import QueueRegistry
from jobqueue.api.v1.jobs import router as jobs_router
from jobqueue.api.v1.metrics import router as metrics_router

def create_app(registry: Optional[QueueRegistry] = None, run_workers: bool = True) -> FastAPI:
    """
    HTTP surface for producers and operators.
    Handlers must be registered on `registry` before the app starts.
    """
    registry = registry or QueueRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.LOG_LEVEL.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        logger = logging.getLogger("uvicorn")

        # Startup
        await registry.init()
        if run_workers:
            await registry.start()
        logger.info(f"{settings.PROJECT_NAME} ready (queues: {', '.join(registry.queue_names()) or 'none'})")

        yield

        # Shutdown
        await registry.shutdown()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )
    app.state.registry = registry

    app.include_router(jobs_router, prefix="/api/v1/queues", tags=["jobs"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
