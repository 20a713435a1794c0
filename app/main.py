from contextlib import asynccontextmanager
from typing import Optional
import logging
import traceback

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, settings
from app.api.v1.router import api_router
from app.core.exceptions import WorkflowError
from app.database import create_engine_from_settings, create_session_factory, init_db
from app.jobs.background import BackgroundJobQueue
from app.jobs.scheduler import start_scheduler, shutdown_scheduler
from app.services.notifier import ChannelNotifier, NotificationDispatcher, Notifier
from app.services.work_order_sync import WorkOrderSyncService
from app.services.work_order_system import SqlWorkOrderSystem, WorkOrderSystem
from app.services.workflow_orchestrator import PostCommitEffects

logger = logging.getLogger(__name__)


OPENAPI_TAGS = [
    {"name": "Tickets", "description": "Abnormal finding tickets and their workflow actions"},
    {"name": "Work Orders", "description": "CMMS work order link, status and sync log of a ticket"},
    {"name": "Approvals", "description": "Hierarchical approval grants and approver lookup"},
    {"name": "Notifications", "description": "Notification recipient preview"},
]

API_DESCRIPTION = """
## Abnormal Finding Workflow API

Maintenance tickets for abnormal findings on production equipment, moved
through an approval workflow by people holding approval levels (L1-L4) over
plant / area / line / machine scopes.

### Caller identity

Requests that act on behalf of a person carry the person number in the
`X-Person-Id` header.

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Validation failed |
| 401 | Missing X-Person-Id |
| 403 | Insufficient approval level / not the ticket participant |
| 404 | Ticket, unit or grant not found |
| 409 | Action not allowed from the ticket's current status |
| 422 | Invalid action payload |
| 500 | Ticket transition could not be saved |
"""


def configure_logging(app_settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, app_settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    app_settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    work_order_system: Optional[WorkOrderSystem] = None,
) -> FastAPI:
    """
    Build the application.

    The lifespan owns the engine, session factory, background job queue and
    scheduler. ``notifier`` / ``work_order_system`` replace the SMTP + LINE
    and SQL implementations.
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
        - Create engine and tables
        - Wire background jobs, notification and work order sync
        - Start scheduler

        Shutdown:
        - Stop scheduler, drain background jobs, dispose engine
        """
        logger.info(f"Starting {app_settings.APP_NAME} v{app_settings.APP_VERSION}")

        engine = create_engine_from_settings(app_settings)
        await init_db(engine)
        session_factory = create_session_factory(engine)

        jobs = BackgroundJobQueue()
        active_notifier = notifier or ChannelNotifier()
        sync_service = WorkOrderSyncService(
            session_factory,
            work_order_system or SqlWorkOrderSystem(session_factory),
            timeout=app_settings.WORK_ORDER_SYNC_TIMEOUT_SECONDS,
        )

        app.state.settings = app_settings
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.jobs = jobs
        app.state.post_commit_effects = PostCommitEffects(
            session_factory, jobs, NotificationDispatcher(active_notifier), sync_service,
        )
        app.state.scheduler = start_scheduler(app_settings, session_factory, active_notifier)

        yield

        shutdown_scheduler(app.state.scheduler)
        unfinished = await jobs.drain(app_settings.JOB_DRAIN_TIMEOUT_SECONDS)
        if unfinished:
            logger.warning(f"{unfinished} background jobs did not finish before shutdown")
        await engine.dispose()
        logger.info("Shutting down...")

    app = FastAPI(
        title=app_settings.APP_NAME,
        version=app_settings.APP_VERSION,
        description=API_DESCRIPTION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=OPENAPI_TAGS,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        """Workflow failures use the action response shape."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "new_status": None, "error": exc.to_dict()},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Unexpected errors as a JSON 500; traceback only in DEBUG."""
        if isinstance(exc, HTTPException):
            status_code = exc.status_code
            error_message = exc.detail
        else:
            status_code = 500
            error_message = str(exc)
            logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc!r}")

        error_detail = {
            "error": error_message,
            "type": type(exc).__name__,
            "path": str(request.url.path),
            "method": request.method,
        }
        if app_settings.DEBUG:
            error_detail["traceback"] = traceback.format_exc()
        return JSONResponse(status_code=status_code, content=error_detail)

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint with database validation."""
        from sqlalchemy import text
        from datetime import datetime, timezone

        health_status = {
            "status": "healthy",
            "app": app_settings.APP_NAME,
            "version": app_settings.APP_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "database": "unknown",
                "background_jobs": request.app.state.jobs.pending,
            }
        }

        try:
            async with request.app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
                health_status["checks"]["database"] = "connected"
        except Exception as e:
            health_status["status"] = "unhealthy"
            health_status["checks"]["database"] = f"error: {str(e)}"

        if health_status["status"] == "unhealthy":
            return JSONResponse(status_code=503, content=health_status)

        return health_status

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint."""
        return {
            "message": f"Welcome to {app_settings.APP_NAME}",
            "version": app_settings.APP_VERSION,
            "docs": "/docs",
            "redoc": "/redoc",
        }

    return app


configure_logging(settings)
app = create_app()
