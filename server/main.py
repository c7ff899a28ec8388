"""
FastAPI backend for the CRM playbook engine.

Playbook authoring, event and schedule triggered runs, durable waits and
simulation, wired with dependency injection.
"""

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.config import Settings
from core.logging import configure_logging, get_logger
from routers import playbooks
from services import scheduler
from services.playbooks.recovery import set_recovery_sweeper

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting playbook engine")

    await container.database().startup()
    await container.cache().startup()

    # Scheduler must exist in the configured timezone before any job is added
    scheduler.get_scheduler(container.settings().scheduler_timezone)
    scheduler.start_scheduler()

    engine = container.engine()
    engine.set_resume_scheduler(container.resume_scheduler())

    recovery_sweeper = container.recovery_sweeper()
    set_recovery_sweeper(recovery_sweeper)

    resumed = await recovery_sweeper.scan_on_startup()
    if resumed:
        logger.info("Resumed past-due runs on startup", count=len(resumed),
                    execution_ids=resumed)
    await recovery_sweeper.start()

    registered = await container.trigger_manager().sync_schedules()
    logger.info("Services started successfully", scheduled_playbooks=len(registered))
    yield

    # Shutdown
    await recovery_sweeper.stop()
    set_recovery_sweeper(None)
    scheduler.shutdown_scheduler()
    await container.http_client().aclose()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error=f"{type(e).__name__}: {e}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Playbook Engine",
        version="1.0.0",
        description="CRM playbook automation: graph authoring, execution and simulation",
        lifespan=lifespan,
        default_response_class=ORJSONResponse
    )

    # Exception middleware first so CORS wraps it
    app.add_middleware(CatchAllExceptionsMiddleware)

    logger.info("Configuring CORS middleware",
                origins_count=len(settings.cors_origins),
                origins=settings.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(playbooks.router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "OK",
            "service": "playbooks",
            "environment": "development" if settings.debug else "production",
            "timestamp": datetime.now().isoformat()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting playbook engine", host=settings.host, port=settings.port,
                debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log", "*.db"] if settings.debug else None,
    )
