"""
FastAPI application for the CBB stats pipeline
Operator API over pipeline runs, circuit breakers and freshness, plus the
daily scheduled collection run
"""

from fastapi import FastAPI, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy import text
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List
import logging
import os

from backend.models import SessionLocal
from backend.auth import verify_api_key, verify_admin_api_key
from backend.pipeline.circuit_breaker import CircuitBreaker
from backend.pipeline.runner import RunType
from backend.pipeline.stores import FreshnessStore, RunStore
from backend.services.orchestrator import build_default_jobs, run_pipeline
from backend.schemas import (
    CircuitStateResponse,
    FreshnessResponse,
    JobRunResponse,
    PipelineRunResponse,
    RunTriggerRequest,
    RunTriggerResponse,
)

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler instance
scheduler = BackgroundScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting CBB stats pipeline")

    enabled = os.getenv("PIPELINE_SCHEDULER_ENABLED", "true").lower() == "true"
    if enabled:
        cron_hour = int(os.getenv("PIPELINE_CRON_HOUR", "5"))
        timezone = os.getenv("PIPELINE_CRON_TIMEZONE", "America/New_York")
        scheduler.add_job(
            daily_pipeline_job,
            CronTrigger(hour=cron_hour, minute=0, timezone=timezone),
            id="daily_pipeline",
            name="Daily Incremental Pipeline",
            replace_existing=True,
        )
        scheduler.start()
        logger.info("Scheduler started: incremental pipeline@%02d:00 %s", cron_hour, timezone)
    else:
        logger.info("Scheduler disabled (PIPELINE_SCHEDULER_ENABLED=false)")

    yield

    logger.info("Shutting down CBB stats pipeline")
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(
    title="CBB Stats Pipeline",
    description="Fault-tolerant multi-source college basketball stats collection",
    version="1.0",
    lifespan=lifespan,
)


def get_session_factory():
    """Session factory used by the stores; overridden in tests."""
    return SessionLocal


# ============================================================================
# SCHEDULED JOB
# ============================================================================

def daily_pipeline_job():
    """Incremental run over every source, 05:00 ET by default."""
    logger.info("Starting scheduled pipeline run")
    try:
        result = run_pipeline(RunType.INCREMENTAL)
        logger.info(
            "Scheduled pipeline run %s: %s (%d/%d sources)",
            result.run_id, result.status.value,
            result.sources_succeeded, result.sources_attempted,
        )
    except Exception as exc:
        logger.error("Scheduled pipeline run failed: %s", exc, exc_info=True)


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "app": "CBB Stats Pipeline",
        "version": "1.0",
        "status": "operational",
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/health")
def health_check(session_factory=Depends(get_session_factory)):
    """Health check endpoint"""
    health = {"status": "healthy", "database": "connected", "scheduler": "running"}

    db = session_factory()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Health check database error: %s", e)
        health["status"] = "degraded"
        health["database"] = f"error: {str(e)}"
    finally:
        db.close()

    if not scheduler.running:
        health["scheduler"] = "stopped"

    return health


# ============================================================================
# AUTHENTICATED ENDPOINTS - PIPELINE STATUS
# ============================================================================

@app.get("/api/pipeline/runs", response_model=List[PipelineRunResponse])
def list_pipeline_runs(
    limit: int = Query(default=10, ge=1, le=100),
    user: str = Depends(verify_api_key),
    session_factory=Depends(get_session_factory),
):
    """Most recent pipeline runs, newest first"""
    return RunStore(session_factory).recent_runs(limit)


@app.get("/api/pipeline/runs/{run_id}")
def get_pipeline_run(
    run_id: int,
    user: str = Depends(verify_api_key),
    session_factory=Depends(get_session_factory),
):
    """One pipeline run with its job runs"""
    store = RunStore(session_factory)
    record = store.get_run(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Pipeline run {run_id} not found")

    return {
        "run": PipelineRunResponse.model_validate(record),
        "job_runs": [
            JobRunResponse.model_validate(job)
            for job in store.job_runs(pipeline_run_id=run_id, limit=100)
        ],
    }


@app.get("/api/pipeline/job-runs", response_model=List[JobRunResponse])
def list_job_runs(
    limit: int = Query(default=20, ge=1, le=200),
    user: str = Depends(verify_api_key),
    session_factory=Depends(get_session_factory),
):
    """Most recent source job runs across all pipeline runs"""
    return RunStore(session_factory).job_runs(limit=limit)


@app.get("/api/pipeline/circuits", response_model=List[CircuitStateResponse])
def list_circuits(
    user: str = Depends(verify_api_key),
    session_factory=Depends(get_session_factory),
):
    """Circuit breaker state for every source that has one"""
    return [snap.to_dict() for snap in CircuitBreaker(session_factory).list_states()]


@app.get("/api/pipeline/freshness", response_model=List[FreshnessResponse])
def list_freshness(
    user: str = Depends(verify_api_key),
    session_factory=Depends(get_session_factory),
):
    """Last successful refresh per source and data type"""
    return FreshnessStore(session_factory).list_freshness()


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/admin/pipeline/run", response_model=RunTriggerResponse)
def trigger_pipeline_run(
    payload: RunTriggerRequest,
    user: str = Depends(verify_admin_api_key),
    session_factory=Depends(get_session_factory),
):
    """Run the pipeline synchronously (admin only) and return the summary."""
    logger.info("Manual %s pipeline run triggered by %s", payload.run_type, user)
    try:
        result = run_pipeline(
            payload.run_type,
            session_factory=session_factory,
            jobs=build_default_jobs(session_factory),
        )
    except Exception as exc:
        logger.error("Manual pipeline run failed: %s", exc, exc_info=True)
        raise HTTPException(status_code=500, detail=str(exc))

    return RunTriggerResponse(
        message="Pipeline run complete",
        run_id=result.run_id,
        run_type=result.run_type.value,
        status=result.status.value,
        sources_attempted=result.sources_attempted,
        sources_succeeded=result.sources_succeeded,
        sources_failed=result.sources_failed,
        records_processed=result.records_processed,
        errors=result.errors,
        warnings=result.warnings,
        skipped=result.metadata.get("skipped", {}),
    )


@app.post("/admin/pipeline/circuits/{source}/reset", response_model=CircuitStateResponse)
def reset_circuit(
    source: str,
    user: str = Depends(verify_admin_api_key),
    session_factory=Depends(get_session_factory),
):
    """Force a source's circuit closed (admin only)."""
    breaker = CircuitBreaker(session_factory)
    breaker.reset(source)
    logger.info("Circuit for %s reset by %s", source, user)
    return breaker.get_state(source).to_dict()


@app.get("/admin/scheduler/status")
async def get_scheduler_status(user: str = Depends(verify_admin_api_key)):
    """Get scheduler job status"""
    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
        })

    return {
        "running": scheduler.running,
        "jobs": jobs,
    }


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all exception handler"""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": type(exc).__name__}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
