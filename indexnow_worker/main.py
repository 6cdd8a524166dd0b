"""Main entry point for the IndexNow job worker service."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from indexnow_worker.config import get_settings
from indexnow_worker.lib.json_logger import setup_logging
from indexnow_worker.queue.registry import QueueRegistry
from indexnow_worker.routes import health, queues
from indexnow_worker.workers import build_worker_context, initialize_all_workers

logger = logging.getLogger(__name__)

settings = get_settings()
setup_logging(settings.log_level, settings.log_format)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the queue and, in inline mode, run the consumers alongside the HTTP server."""
    registry = QueueRegistry(settings)
    await registry.connect()
    context = build_worker_context(settings, registry)
    app.state.registry = registry
    app.state.context = context

    if settings.worker_mode == "inline":
        started = await initialize_all_workers(registry, context, settings)
        registry.start()
        if started:
            logger.info(f"Background workers running inline: {', '.join(started)}")
    try:
        yield
    finally:
        await registry.shutdown()
        await context.aclose()
        logger.info("Background workers stopped")


app = FastAPI(
    title="IndexNow Studio Job Worker",
    description="Background jobs for rank tracking, billing sweeps, quota resets and email",
    version="0.1.0",
    lifespan=lifespan,
)

cors_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(queues.router, prefix="/queues", tags=["Queues"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "IndexNow Studio Job Worker",
        "version": "0.1.0",
        "status": "running",
    }


if __name__ == "__main__":
    uvicorn.run(
        "indexnow_worker.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
