"""
Operational endpoints: health, job status and manual job triggers.

Job bodies are synchronous, so the trigger endpoints are plain ``def`` handlers
and FastAPI runs them in its threadpool.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, Request
from sqlalchemy import text

from arena.bootstrap import Services
from arena.schemas import AggregationResult, HealthResponse, JobStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ops", tags=["ops"])


def get_services(request: Request) -> Services:
    """Services built by the application lifespan (or injected by tests)."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Reports database, Redis and scheduler status. Redis being down degrades but does not fail the service."
)
def health_check(services: Services = Depends(get_services)):
    database_status = "healthy"
    db = services.session_factory()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        database_status = "unhealthy"
    finally:
        db.close()

    cache_status = "healthy" if services.cache.ping() else "unavailable"
    scheduler_status = "running" if services.jobs.running else "stopped"

    return HealthResponse(
        status="healthy" if database_status == "healthy" else "unhealthy",
        database=database_status,
        cache=cache_status,
        scheduler=scheduler_status,
        timestamp=services.aggregator.clock(),
    )


@router.get("/jobs", response_model=List[JobStatus], summary="List periodic jobs")
def list_jobs(services: Services = Depends(get_services)):
    return services.jobs.status()


@router.post(
    "/jobs/{name}/run",
    response_model=JobStatus,
    summary="Run a job now",
    description="Fires one job immediately in the request thread and returns its updated state."
)
def run_job(
    name: str = Path(..., description="Job name as listed by GET /api/ops/jobs", examples=["global_aggregation"]),
    services: Services = Depends(get_services)
):
    try:
        job = services.jobs.get_job(name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job {name} not found")

    services.jobs.run_job_now(name)
    return job.status()


@router.post(
    "/leaderboard/rebuild",
    response_model=AggregationResult,
    summary="Rebuild the global leaderboard",
    description="Recomputes every global standing from consumed events. Manual operation only."
)
def rebuild_leaderboard(services: Services = Depends(get_services)):
    logger.warning("Global leaderboard rebuild requested via ops API")
    result = services.aggregator.rebuild_global_leaderboard()
    if not result.success:
        raise HTTPException(status_code=500, detail=f"Rebuild failed: {result.error}")
    return result
