"""
Pydantic request/response schemas for the pipeline admin API.

Using explicit schemas instead of raw ORM rows keeps the JSON stable when
columns are added and generates accurate OpenAPI docs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field


RunTypeLiteral = Literal["full", "incremental", "validation", "backfill"]


# ---------------------------------------------------------------------------
# Pipeline runs
# ---------------------------------------------------------------------------

class PipelineRunResponse(BaseModel):
    """A persisted pipeline run."""
    id: int
    run_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    sources_attempted: int = 0
    sources_succeeded: int = 0
    sources_failed: int = 0
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    metadata: dict = Field(
        default_factory=dict,
        validation_alias=AliasChoices("run_metadata", "metadata"),
    )

    class Config:
        from_attributes = True


class JobRunResponse(BaseModel):
    """One source job inside a pipeline run."""
    id: int
    pipeline_run_id: Optional[int] = None
    source: str
    job_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    retry_count: int = 0
    metadata: dict = Field(
        default_factory=dict,
        validation_alias=AliasChoices("run_metadata", "metadata"),
    )

    class Config:
        from_attributes = True


class RunTriggerRequest(BaseModel):
    """Payload for POST /admin/pipeline/run."""
    run_type: RunTypeLiteral = Field("incremental", description="full ignores freshness")

    model_config = {
        "json_schema_extra": {"example": {"run_type": "full"}}
    }


class RunTriggerResponse(BaseModel):
    """Summary returned after a manually triggered run."""
    message: str
    run_id: int
    run_type: str
    status: str
    sources_attempted: int
    sources_succeeded: int
    sources_failed: int
    records_processed: int
    errors: list[str]
    warnings: list[str]
    skipped: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Source health
# ---------------------------------------------------------------------------

class CircuitStateResponse(BaseModel):
    source: str
    state: str
    failure_count: int
    success_count: int
    last_failure_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    open_until: Optional[datetime] = None


class FreshnessResponse(BaseModel):
    source: str
    data_type: str
    last_updated_at: datetime
    record_count: int = 0

    class Config:
        from_attributes = True
