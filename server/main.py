"""
Workflow automation API: producer routes, schedule management and the
per-job event WebSocket.

With EMBEDDED_WORKER=true (default) the queue worker and the stalled-job
sweeper run inside this process; otherwise run worker.py separately.
"""

# Performance: Install uvloop if available (Linux/macOS only)
try:
    import uvloop
    uvloop.install()
except ImportError:
    pass  # Windows - uvloop not available, use default asyncio

import logging
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.logging import configure_logging, get_logger
from routers import webhook, websocket, workflow

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting workflow API", queue=settings.queue_name,
                embedded_worker=settings.embedded_worker)

    cache = container.cache()
    await cache.startup()

    bridge = container.event_bridge()
    await bridge.start()

    worker = sweeper = None
    if settings.embedded_worker:
        worker = container.worker()
        sweeper = container.stalled_sweeper()
        await worker.start()
        await sweeper.start()

    logger.info("Services started successfully", redis=cache.is_redis_available())
    yield

    # Shutdown
    if worker:
        await worker.stop()
    if sweeper:
        await sweeper.stop()
    await bridge.stop()
    await cache.shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Workflow Automation Server",
    version="1.0.0",
    description="Graph-compiled workflow automation with a durable job queue",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


# Exception handler middleware BEFORE CORS to catch all errors
app.add_middleware(CatchAllExceptionsMiddleware)

logger.info("Configuring CORS middleware", origins=settings.cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(workflow.router)
app.include_router(webhook.router)
app.include_router(websocket.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    cache = container.cache()
    return {
        "status": "OK",
        "service": "workflow-server",
        "version": "1.0.0",
        "environment": "development" if settings.is_development else "production",
        "redis_enabled": settings.redis_enabled,
        "redis_connected": cache.is_redis_available(),
        "sheets_configured": container.sheets_client().is_configured,
        "queue": {
            "name": settings.queue_name,
            "embedded_worker": settings.embedded_worker,
            **(await container.queue().counts()),
        },
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting workflow API", host=settings.host, port=settings.port,
                debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log"] if settings.debug else None,
        workers=1,
    )
