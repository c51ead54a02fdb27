"""
Velora Follow-Up Radar - Main Application Entry Point
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from velora.api import followups_router, inbound_router, usage_router
from velora.config import Settings, get_settings
from velora.db import BoundedDocumentStore, SQLDocumentStore, build_engine, build_session_maker, init_db
from velora.errors import (
    ActionLinkError, FollowupNotFoundError, RateLimitExceededError,
    StoreNotInitializedError, StoreUnavailableError,
)
from velora.logging_config import configure_logging, generate_request_id, set_request_context
from velora.scheduler import setup_scheduler
from velora.services.container import RadarServices, build_services

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[RadarServices] = None,
) -> FastAPI:
    """
    Build the application.

    With `services` the app is ready immediately and the lifespan leaves
    storage alone (tests). Without, the lifespan opens the database and
    wires services from `settings`.
    """
    settings = settings or (services.settings if services else get_settings())
    configure_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler - runs on startup and shutdown"""
        engine = None
        scheduler = None

        if getattr(app.state, "services", None) is None:
            logger.info("Follow-Up Radar starting up...")
            engine = build_engine(settings.database_url, echo=settings.debug)
            await init_db(engine)
            logger.info("Database initialized")
            store = BoundedDocumentStore(
                SQLDocumentStore(build_session_maker(engine)),
                timeout=settings.remote_call_timeout,
            )
            app.state.services = build_services(settings, store)

        radar_services: RadarServices = app.state.services
        if settings.enable_scheduler:
            scheduler = setup_scheduler(
                radar_services.rate_limiter,
                radar_services.action_links,
                cleanup_interval_minutes=settings.rate_limit_cleanup_minutes,
            )
            scheduler.start()
            logger.info("Housekeeping scheduler started")

        yield

        # Shutdown
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
        await radar_services.cost_tracker.drain()
        if engine is not None:
            await engine.dispose()
        logger.info("Follow-Up Radar shut down")

    app = FastAPI(
        title=settings.app_name,
        description="Follow-Up Radar: email followup tracking, rate limiting and cost accounting",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or generate_request_id()
        set_request_context(request_id=request_id, user_id=request.query_params.get("user_id", ""))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)

    app.include_router(followups_router, prefix=settings.api_prefix)
    app.include_router(inbound_router, prefix=settings.api_prefix)
    app.include_router(usage_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health():
        """Health check that also pings the store"""
        radar_services = getattr(app.state, "services", None)
        store_ok = radar_services is not None and radar_services.store is not None
        return {
            "status": "healthy" if store_ok else "degraded",
            "service": settings.app_name,
            "store": "ok" if store_ok else "not initialized",
        }

    return app


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(FollowupNotFoundError)
    async def followup_not_found(request: Request, exc: FollowupNotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(RateLimitExceededError)
    async def rate_limited(request: Request, exc: RateLimitExceededError):
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": "Rate limit exceeded", "retry_after": exc.retry_after},
            headers=headers,
        )

    @app.exception_handler(StoreNotInitializedError)
    async def store_not_initialized(request: Request, exc: StoreNotInitializedError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)}
        )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error(f"Store unavailable on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Document store unavailable"},
        )

    @app.exception_handler(ActionLinkError)
    async def invalid_action_link(request: Request, exc: ActionLinkError):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Invalid or expired token", "reason": str(exc)},
        )

    @app.exception_handler(ValueError)
    async def invalid_value(request: Request, exc: ValueError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("velora.main:app", host="0.0.0.0", port=8000, reload=get_settings().debug)
