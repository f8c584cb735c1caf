"""
Arena - competitive-integrity service host.

Owns the process lifecycle: logging, schema setup, service wiring and the
periodic job scheduler. The HTTP surface is limited to operational endpoints.
"""
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from arena.api.ops import router as ops_router
from arena.bootstrap import Services, build_services
from arena.config import get_settings
from arena.database import init_db
from arena.exceptions import ArenaError

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(settings.log_file)
    ]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager for startup and shutdown events.

    Handles:
    - Database initialization and service wiring
    - New Relic agent initialization
    - Starting and stopping the periodic jobs
    """
    # Startup
    logger.info("=" * 60)
    logger.info("Arena Starting Up")
    logger.info("=" * 60)

    if app.state.services is None:
        try:
            logger.info("Initializing database connection pool...")
            init_db()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Database initialization failed: {str(e)}", exc_info=True)
            raise
        app.state.services = build_services()

    # Initialize New Relic monitoring if configured
    if settings.new_relic_license_key:
        try:
            import newrelic.agent
            newrelic.agent.initialize()
            logger.info("New Relic agent initialized successfully")
        except ImportError:
            logger.warning("New Relic package not installed. Monitoring disabled.")
        except Exception as e:
            logger.warning(f"New Relic initialization failed: {str(e)}")
    else:
        logger.info("New Relic monitoring not configured (license key not set)")

    services: Services = app.state.services
    if settings.scheduler_enabled:
        await services.jobs.start()
    else:
        logger.info("Job scheduler disabled (SCHEDULER_ENABLED=false)")

    logger.info("Application started successfully!")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("=" * 60)
    logger.info("Arena Shutting Down")
    logger.info("=" * 60)
    await services.jobs.stop()
    logger.info("Application shutdown complete")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built services (used by tests); built in the lifespan when omitted
    """
    app = FastAPI(
        title="Arena Ops API",
        description="Operational surface of the competitive-integrity pipeline: health, periodic job state and manual triggers.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(ArenaError)
    async def arena_exception_handler(request: Request, exc: ArenaError):
        """Map domain errors to their 4xx status with a stable error code."""
        logger.warning(f"{exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors with detailed error messages."""
        logger.warning(f"Validation error: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "Validation Error",
                "detail": exc.errors(),
                "message": "Invalid request data. Please check your input."
            }
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions with consistent error format."""
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "status_code": exc.status_code
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions with logging."""
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "message": "An unexpected error occurred. Please try again later."
            }
        )

    app.include_router(ops_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "message": "Arena competitive-integrity service",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/api/ops/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "arena.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        access_log=True
    )
