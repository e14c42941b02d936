"""
Job contract and the generic source-job driver.

Every collector the runner schedules is a ``JobConfig`` whose ``run`` returns
a ``JobResult``.  Most collectors follow the same fixed workflow, so instead
of a scraper base class they implement the small ``SourceJob`` capability
interface and are wrapped with ``run_source_job``::

    scrape()        -> raw rows              (network I/O; may raise)
    validate(rows)  -> list of problems      (empty == valid)
    transform(rows) -> canonical records     (team resolution happens here)
    save(records)   -> JobResult             (idempotent upserts)

Network / auth / timeout exceptions from ``scrape`` propagate so the retry
handler can classify and back off.  Validation problems raise
``ValidationError``, which is never retried.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from backend.pipeline.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    success: bool
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JobConfig:
    source: str
    job_type: str
    run: Callable[[], JobResult]
    enabled: bool = True
    priority: int = 100           # lower runs earlier
    max_age: float = 24           # hours before the source's data is stale
    dependencies: List[str] = field(default_factory=list)


class SourceJob(Protocol):
    source: str
    job_type: str

    def scrape(self) -> List[Any]: ...

    def validate(self, rows: List[Any]) -> List[str]: ...

    def transform(self, rows: List[Any]) -> List[Any]: ...

    def save(self, records: List[Any]) -> JobResult: ...


def run_source_job(job: SourceJob) -> JobResult:
    """Drive one scrape→validate→transform→save pass with uniform logging."""
    started = time.monotonic()
    logger.info("[%s] Starting %s collection", job.source, job.job_type)

    rows = job.scrape()
    logger.info("[%s] Scraped %d records", job.source, len(rows))

    problems = job.validate(rows)
    if problems:
        raise ValidationError(f"Validation failed: {', '.join(problems)}")

    records = job.transform(rows)
    logger.info("[%s] Transformed %d records", job.source, len(records))

    result = job.save(records)
    duration_ms = int((time.monotonic() - started) * 1000)
    result.metadata.setdefault("duration_ms", duration_ms)
    logger.info(
        "[%s] Saved %d records (%d created, %d updated) in %dms",
        job.source, result.records_processed, result.records_created,
        result.records_updated, duration_ms,
    )
    return result


def source_job_config(
    job: SourceJob,
    priority: int = 100,
    max_age: float = 24,
    dependencies: Optional[List[str]] = None,
    enabled: bool = True,
) -> JobConfig:
    """Wrap a ``SourceJob`` so the pipeline runner can schedule it."""
    return JobConfig(
        source=job.source,
        job_type=job.job_type,
        run=lambda: run_source_job(job),
        enabled=enabled,
        priority=priority,
        max_age=max_age,
        dependencies=list(dependencies or []),
    )
