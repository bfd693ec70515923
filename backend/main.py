"""
Main FastAPI application entry point
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dealroom import __version__
from dealroom.api.routes import (attribution, credits, deals, events, formulations, health,
                                 ingredients, proposals, settlement, usage)
from dealroom.core.config import get_settings
from dealroom.core.database import init_db
from dealroom.core.errors import (CalculationError, ConcurrencyError, ConsensusError, DealRoomError,
                                  ExecutionFailure, LockedError, NotFoundError, StateError,
                                  ValidationError)
from dealroom.core.events import get_event_bus
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.middleware import LoggingContextMiddleware, MetricsMiddleware

# Configure logging first
LoggingConfig.configure()

logger = LoggingConfig.get_logger(__name__)

# Most specific class first; ConsensusError covers AlreadyVotedError
ERROR_STATUS = (
    (ValidationError, 422),
    (CalculationError, 422),
    (NotFoundError, 404),
    (LockedError, 423),
    (StateError, 409),
    (ConsensusError, 409),
    (ConcurrencyError, 409),
    (ExecutionFailure, 500),
)


def status_for(exc: DealRoomError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan events for FastAPI app"""
    settings = get_settings()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode...")

    if settings.create_tables_on_startup:
        init_db()
        logger.info("Database tables created")

    # Attach default subscribers before the first request publishes
    get_event_bus()

    yield

    logger.info(f"Shutting down {settings.app_name}...")


_settings = get_settings()

app = FastAPI(
    title=_settings.app_name,
    description="Deal room attribution and settlement engine",
    version=__version__,
    lifespan=lifespan,
)

# Add logging context middleware (before CORS to capture all requests)
app.add_middleware(LoggingContextMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DealRoomError)
async def dealroom_exception_handler(request: Request, exc: DealRoomError):
    """Map engine rejections to HTTP responses"""
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        f"{type(exc).__name__}: {exc.message}",
        extra={
            "reason": exc.reason,
            "error_type": type(exc).__name__,
            "path": request.url.path,
            "method": request.method,
        }
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler to log all unhandled errors"""
    if isinstance(exc, FastAPIHTTPException):
        raise exc

    logger.error(
        "Unhandled exception",
        exc_info=True,
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path,
            "method": request.method,
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__
        }
    )


# Include routers
app.include_router(health.router)
app.include_router(deals.router)
app.include_router(ingredients.router)
app.include_router(formulations.router)
app.include_router(proposals.router)
app.include_router(attribution.router)
app.include_router(usage.router)
app.include_router(credits.router)
app.include_router(settlement.router)
app.include_router(events.router)


@app.get("/api")
async def root():
    """Root API endpoint"""
    settings = get_settings()
    return {
        "name": settings.app_name,
        "version": __version__,
        "status": "running",
        "environment": settings.app_env,
    }


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.app_env == "development",
    )
