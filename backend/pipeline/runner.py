"""
Pipeline runner: orchestrates one batch of source jobs.

For every enabled job, in ascending priority (stable for ties), strictly
sequentially:

  1. dependency gate   every dependency's ``teams`` data must be fresh
  2. freshness gate    incremental runs skip sources whose data is fresh
  3. circuit gate      open circuits are skipped
  4. execute           job.run() under RetryHandler.with_auto_retry
  5. bookkeeping       circuit breaker, freshness, job run record

Skipped jobs never count as attempted.  A job's terminal failure is recorded
and the batch moves on.  Storage errors in gates and bookkeeping become run
errors without stopping the batch, and the run row is always finalized.
The runner has no retry logic of its own.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from backend.pipeline.circuit_breaker import CircuitBreaker
from backend.pipeline.errors import ErrorCategory, SkipReason
from backend.pipeline.jobs import JobConfig, JobResult
from backend.pipeline.retry_handler import RetryHandler
from backend.pipeline.stores import FreshnessStore, RunStore

logger = logging.getLogger(__name__)

# Dependencies are checked against this data type regardless of the job's own type.
DEPENDENCY_DATA_TYPE = "teams"


class RunType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    VALIDATION = "validation"
    BACKFILL = "backfill"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


@dataclass
class PipelineRun:
    """Aggregated outcome of one ``PipelineRunner.run`` call."""

    run_id: int
    run_type: RunType
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    sources_attempted: int = 0
    sources_succeeded: int = 0
    sources_failed: int = 0
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def final_status(self) -> RunStatus:
        if self.sources_failed == 0:
            return RunStatus.COMPLETED
        if self.sources_succeeded > 0:
            return RunStatus.PARTIAL_SUCCESS
        return RunStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "run_type": self.run_type.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "sources_attempted": self.sources_attempted,
            "sources_succeeded": self.sources_succeeded,
            "sources_failed": self.sources_failed,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "metadata": dict(self.metadata),
        }


class PipelineRunner:
    def __init__(
        self,
        run_store: Optional[RunStore] = None,
        freshness: Optional[FreshnessStore] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_handler: Optional[RetryHandler] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.run_store = run_store or RunStore()
        self.freshness = freshness or FreshnessStore()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.retry_handler = retry_handler or RetryHandler()
        self._now = now

    def run(self, jobs: List[JobConfig], run_type=RunType.INCREMENTAL) -> PipelineRun:
        run_type = RunType(run_type)
        run_id = self.run_store.create_run(run_type.value)
        result = PipelineRun(run_id=run_id, run_type=run_type, started_at=self._now())
        skipped: Dict[str, str] = {}

        logger.info("[Pipeline] Starting %s run: %s", run_type.value, run_id)

        # sorted() is stable, so equal priorities keep their submitted order
        enabled = sorted((job for job in jobs if job.enabled), key=lambda job: job.priority)

        aborted = False
        try:
            for job in enabled:
                self._run_job(run_id, job, run_type, result, skipped)
        except Exception as exc:
            aborted = True
            logger.error("[Pipeline] Run %s aborted: %s", run_id, exc, exc_info=True)
            result.errors.append(f"Run aborted: {exc}")
            raise
        finally:
            if skipped:
                result.metadata["skipped"] = skipped
            result.status = RunStatus.FAILED if aborted else result.final_status()
            result.completed_at = self._now()
            self._finalize(result)

        logger.info(
            "[Pipeline] Completed %s run: %s (%d/%d sources succeeded)",
            run_type.value, result.status.value,
            result.sources_succeeded, result.sources_attempted,
        )
        return result

    def _run_job(
        self,
        run_id: int,
        job: JobConfig,
        run_type: RunType,
        result: PipelineRun,
        skipped: Dict[str, str],
    ) -> None:
        try:
            reason = self._skip_reason(job, run_type)
        except SQLAlchemyError as exc:
            _storage_error(result, job.source, "gate check", exc)
            return

        if reason is SkipReason.DEPENDENCY_NOT_SATISFIED:
            logger.info("[Pipeline] Skipping %s - dependencies not met", job.source)
            result.warnings.append(f"Skipped {job.source}: dependencies not satisfied")
        elif reason is SkipReason.CIRCUIT_OPEN:
            logger.info("[Pipeline] Skipping %s - circuit breaker open", job.source)
            result.warnings.append(f"Skipped {job.source}: circuit breaker is open")
        elif reason is SkipReason.DATA_FRESH:
            logger.info("[Pipeline] Skipping %s - data is fresh", job.source)
        if reason is not None:
            skipped[job.source] = reason.value
            return

        result.sources_attempted += 1
        job_result = self._execute(run_id, job, result)

        if job_result.success:
            result.sources_succeeded += 1
            result.records_processed += job_result.records_processed or 0
            result.records_created += job_result.records_created or 0
            result.records_updated += job_result.records_updated or 0
            result.warnings.extend(job_result.warnings)
            self.circuit_breaker.record_success(job.source)
        else:
            result.sources_failed += 1
            result.errors.extend(job_result.errors)
            self.circuit_breaker.record_failure(job.source)

    def _finalize(self, result: PipelineRun) -> None:
        try:
            self.run_store.finalize_run(
                result.run_id,
                status=result.status.value,
                completed_at=result.completed_at,
                sources_attempted=result.sources_attempted,
                sources_succeeded=result.sources_succeeded,
                sources_failed=result.sources_failed,
                records_processed=result.records_processed,
                records_created=result.records_created,
                records_updated=result.records_updated,
                errors=result.errors,
                warnings=result.warnings,
                metadata=result.metadata,
            )
        except SQLAlchemyError as exc:
            logger.error("[Pipeline] Could not finalize run %s: %s", result.run_id, exc, exc_info=True)

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _skip_reason(self, job: JobConfig, run_type: RunType) -> Optional[SkipReason]:
        if job.dependencies and not self._dependencies_met(job):
            return SkipReason.DEPENDENCY_NOT_SATISFIED
        if run_type is RunType.INCREMENTAL and self.freshness.is_data_fresh(
            job.source, job.job_type, job.max_age
        ):
            return SkipReason.DATA_FRESH
        if not self.circuit_breaker.is_available(job.source):
            return SkipReason.CIRCUIT_OPEN
        return None

    def _dependencies_met(self, job: JobConfig) -> bool:
        return all(
            self.freshness.is_data_fresh(dep, DEPENDENCY_DATA_TYPE, job.max_age)
            for dep in job.dependencies
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, run_id: int, job: JobConfig, result: PipelineRun) -> JobResult:
        started = time.monotonic()
        retry_count = 0
        try:
            job_run_id = self.run_store.create_job_run(run_id, job.source, job.job_type)
        except SQLAlchemyError as exc:
            _storage_error(result, job.source, "job run create", exc)
            job_run_id = None

        def _on_retry(attempt: int, exc: BaseException, category: ErrorCategory) -> None:
            nonlocal retry_count
            retry_count = attempt
            logger.warning(
                "[Pipeline] %s retry %d (%s): %s", job.source, attempt, category.value, exc
            )

        logger.info("[Pipeline] Running %s/%s...", job.source, job.job_type)
        try:
            job_result = self.retry_handler.with_auto_retry(job.run, on_retry=_on_retry)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("[Pipeline] %s failed: %s", job.source, message)
            self._finalize_job_run(
                result, job, job_run_id,
                status="failed",
                completed_at=self._now(),
                duration_ms=_elapsed_ms(started),
                errors=[message],
                retry_count=retry_count,
            )
            return JobResult(success=False, errors=[message])

        if not job_result.success and not job_result.errors:
            job_result.errors.append(f"{job.source}: job reported failure")

        self._finalize_job_run(
            result, job, job_run_id,
            status="completed" if job_result.success else "failed",
            completed_at=self._now(),
            duration_ms=_elapsed_ms(started),
            records_processed=job_result.records_processed or 0,
            records_created=job_result.records_created or 0,
            records_updated=job_result.records_updated or 0,
            records_failed=job_result.records_failed or 0,
            errors=job_result.errors,
            warnings=job_result.warnings,
            retry_count=retry_count,
            metadata=job_result.metadata,
        )

        if job_result.success:
            try:
                self.freshness.update_freshness(
                    job.source, job.job_type, job_result.records_processed or 0
                )
            except SQLAlchemyError as exc:
                _storage_error(result, job.source, "freshness update", exc)
        else:
            logger.error("[Pipeline] %s reported failure: %s", job.source, job_result.errors)
        return job_result

    def _finalize_job_run(self, result: PipelineRun, job: JobConfig, job_run_id, **fields) -> None:
        if job_run_id is None:
            return
        try:
            self.run_store.finalize_job_run(job_run_id, **fields)
        except SQLAlchemyError as exc:
            _storage_error(result, job.source, "job run finalize", exc)


def _storage_error(result: PipelineRun, source: str, step: str, exc: Exception) -> None:
    # Bookkeeping failures are reported on the run; the job's own outcome stands.
    message = f"{source}: storage error during {step}: {exc}"
    logger.error("[Pipeline] %s", message, exc_info=True)
    result.errors.append(message)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
