"""
Assemble the default job batch and run it.

Priorities: the team directory runs first (10); stats sources follow.
Every stats job depends on ``teams`` so a stale directory skips them
instead of producing unresolved-name noise.
"""

import logging
from typing import List, Optional

from backend.models import SessionLocal
from backend.pipeline.circuit_breaker import CircuitBreaker
from backend.pipeline.jobs import JobConfig, source_job_config
from backend.pipeline.retry_handler import RetryHandler
from backend.pipeline.runner import PipelineRun, PipelineRunner, RunType
from backend.pipeline.stores import FreshnessStore, RunStore
from backend.services.ratings import (
    BartTorvikStatsJob,
    ESPNStatsJob,
    KenPomStatsJob,
    TeamDirectoryJob,
    current_season,
)

logger = logging.getLogger(__name__)

# Hours before each source's data is considered stale.
TEAMS_MAX_AGE = 24 * 7
STATS_MAX_AGE = 20


def build_default_jobs(session_factory=SessionLocal, season: Optional[int] = None) -> List[JobConfig]:
    season = season or current_season()
    kenpom = KenPomStatsJob(session_factory, season)
    return [
        source_job_config(TeamDirectoryJob(session_factory, season), priority=10,
                          max_age=TEAMS_MAX_AGE),
        source_job_config(BartTorvikStatsJob(session_factory, season), priority=20,
                          max_age=STATS_MAX_AGE, dependencies=["teams"]),
        source_job_config(kenpom, priority=30, max_age=STATS_MAX_AGE,
                          dependencies=["teams"], enabled=kenpom.enabled),
        source_job_config(ESPNStatsJob(session_factory, season), priority=40,
                          max_age=STATS_MAX_AGE, dependencies=["teams"]),
    ]


def build_runner(session_factory=SessionLocal) -> PipelineRunner:
    return PipelineRunner(
        run_store=RunStore(session_factory),
        freshness=FreshnessStore(session_factory),
        circuit_breaker=CircuitBreaker(session_factory),
        retry_handler=RetryHandler(),
    )


def run_pipeline(
    run_type=RunType.INCREMENTAL,
    session_factory=SessionLocal,
    jobs: Optional[List[JobConfig]] = None,
) -> PipelineRun:
    """Run the default batch (or ``jobs``) and return the finalized run."""
    runner = build_runner(session_factory)
    batch = jobs if jobs is not None else build_default_jobs(session_factory)
    logger.info("Pipeline %s run with %d jobs", RunType(run_type).value, len(batch))
    return runner.run(batch, run_type)
