"""
Persistence seams used by the pipeline runner.

FreshnessStore   is_data_fresh / update_freshness over ``data_freshness``
RunStore         create/finalize ``pipeline_runs`` and ``scraper_runs`` rows

Both take a session factory so callers (and tests) decide which engine the
rows land in.  Freshness upserts tolerate concurrent writers: a uniqueness
conflict on insert falls back to an update of the row the other writer made.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from backend.models import (
    DataFreshness,
    JobRunRecord,
    PipelineRunRecord,
    SessionLocal,
)

logger = logging.getLogger(__name__)


class FreshnessStore:
    """Freshness oracle: how recently did a source refresh a data type?"""

    def __init__(self, session_factory=SessionLocal, now: Callable[[], datetime] = datetime.utcnow):
        self._session_factory = session_factory
        self._now = now

    def is_data_fresh(self, source: str, data_type: str, max_age_hours: float) -> bool:
        db = self._session_factory()
        try:
            last_updated = (
                db.query(DataFreshness.last_updated_at)
                .filter(DataFreshness.source == source, DataFreshness.data_type == data_type)
                .scalar()
            )
        finally:
            db.close()

        if last_updated is None:
            return False
        return last_updated > self._now() - timedelta(hours=max_age_hours)

    def update_freshness(self, source: str, data_type: str, record_count: int) -> None:
        now = self._now()
        values = {
            DataFreshness.last_updated_at: now,
            DataFreshness.record_count: record_count,
            DataFreshness.updated_at: now,
        }
        db = self._session_factory()
        try:
            updated = (
                db.query(DataFreshness)
                .filter(DataFreshness.source == source, DataFreshness.data_type == data_type)
                .update(values, synchronize_session=False)
            )
            if not updated:
                db.add(DataFreshness(
                    source=source,
                    data_type=data_type,
                    last_updated_at=now,
                    record_count=record_count,
                    updated_at=now,
                ))
            db.commit()
        except IntegrityError:
            # Another run inserted the row between our UPDATE and INSERT.
            db.rollback()
            db.query(DataFreshness).filter(
                DataFreshness.source == source, DataFreshness.data_type == data_type
            ).update(values, synchronize_session=False)
            db.commit()
        finally:
            db.close()

        logger.debug("Freshness: %s/%s = %d records at %s", source, data_type, record_count, now)

    def list_freshness(self) -> List[DataFreshness]:
        db = self._session_factory()
        try:
            rows = db.query(DataFreshness).order_by(DataFreshness.last_updated_at.desc()).all()
            db.expunge_all()
            return rows
        finally:
            db.close()


# Columns the runner may set when finalizing a run / job run.
_RUN_FIELDS = {
    "status", "completed_at", "sources_attempted", "sources_succeeded",
    "sources_failed", "records_processed", "records_created", "records_updated",
    "errors", "warnings", "metadata",
}
_JOB_FIELDS = {
    "status", "completed_at", "duration_ms", "records_processed",
    "records_created", "records_updated", "records_failed", "errors",
    "warnings", "retry_count", "metadata",
}


def _column_values(fields: Dict, allowed: set) -> Dict:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown run fields: {sorted(unknown)}")
    values = dict(fields)
    if "metadata" in values:
        values["run_metadata"] = values.pop("metadata")
    return values


class RunStore:
    """Create and finalize pipeline / job run records."""

    def __init__(self, session_factory=SessionLocal, now: Callable[[], datetime] = datetime.utcnow):
        self._session_factory = session_factory
        self._now = now

    def create_run(self, run_type: str) -> int:
        db = self._session_factory()
        try:
            record = PipelineRunRecord(
                run_type=run_type,
                status="running",
                started_at=self._now(),
                errors=[],
                warnings=[],
                run_metadata={},
            )
            db.add(record)
            db.commit()
            return record.id
        finally:
            db.close()

    def finalize_run(self, run_id: int, **fields) -> None:
        self._update(PipelineRunRecord, run_id, _column_values(fields, _RUN_FIELDS))

    def create_job_run(self, pipeline_run_id: int, source: str, job_type: str) -> int:
        db = self._session_factory()
        try:
            record = JobRunRecord(
                pipeline_run_id=pipeline_run_id,
                source=source,
                job_type=job_type,
                status="running",
                started_at=self._now(),
                errors=[],
                warnings=[],
                run_metadata={},
            )
            db.add(record)
            db.commit()
            return record.id
        finally:
            db.close()

    def finalize_job_run(self, job_run_id: int, **fields) -> None:
        self._update(JobRunRecord, job_run_id, _column_values(fields, _JOB_FIELDS))

    # ------------------------------------------------------------------
    # Operator queries
    # ------------------------------------------------------------------

    def get_run(self, run_id: int) -> Optional[PipelineRunRecord]:
        db = self._session_factory()
        try:
            record = db.get(PipelineRunRecord, run_id)
            if record is not None:
                db.expunge(record)
            return record
        finally:
            db.close()

    def recent_runs(self, limit: int = 10) -> List[PipelineRunRecord]:
        db = self._session_factory()
        try:
            rows = (
                db.query(PipelineRunRecord)
                .order_by(PipelineRunRecord.started_at.desc(), PipelineRunRecord.id.desc())
                .limit(limit)
                .all()
            )
            db.expunge_all()
            return rows
        finally:
            db.close()

    def job_runs(self, pipeline_run_id: Optional[int] = None, limit: int = 20) -> List[JobRunRecord]:
        db = self._session_factory()
        try:
            q = db.query(JobRunRecord)
            if pipeline_run_id is not None:
                q = q.filter(JobRunRecord.pipeline_run_id == pipeline_run_id)
            rows = q.order_by(JobRunRecord.started_at.desc(), JobRunRecord.id.desc()).limit(limit).all()
            db.expunge_all()
            return rows
        finally:
            db.close()

    def _update(self, model, record_id: int, values: Dict) -> None:
        db = self._session_factory()
        try:
            columns = {getattr(model, name): value for name, value in values.items()}
            db.query(model).filter(model.id == record_id).update(columns, synchronize_session=False)
            db.commit()
        finally:
            db.close()
