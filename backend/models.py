"""
Database models for the CBB stats pipeline
SQLAlchemy ORM (PostgreSQL in production, SQLite for local runs and tests)
"""

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    JSON,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from datetime import datetime
import os
from dotenv import load_dotenv

load_dotenv()

# Local runs fall back to a SQLite file; production sets a postgresql:// URL.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./cbb_pipeline.db")

engine = create_engine(DATABASE_URL, pool_pre_ping=True, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class Team(Base):
    """Canonical team identity shared by every data source"""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False, index=True)  # canonical name
    short_name = Column(String(8), nullable=False)
    conference = Column(String)

    # {"barttorvik": "Duke", "espn": "Duke Blue Devils", ...}
    external_ids = Column(JSON, nullable=False, default=dict)
    # Bumped on every external_ids write (optimistic concurrency)
    version = Column(Integer, nullable=False, default=1)

    stats = relationship("TeamStat", back_populates="team")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TeamStat(Base):
    """Per-source season stats for a team (one row per team/season/source)"""

    __tablename__ = "team_stats"

    id = Column(Integer, primary_key=True, index=True)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=False, index=True)
    season = Column(Integer, nullable=False, index=True)
    source = Column(String, nullable=False, index=True)  # "barttorvik", "kenpom", "espn"

    games_played = Column(Integer)
    wins = Column(Integer)
    losses = Column(Integer)
    offensive_efficiency = Column(Float)
    defensive_efficiency = Column(Float)
    efficiency_margin = Column(Float)
    tempo = Column(Float)
    overall_rank = Column(Integer)

    raw_stats = Column(JSON)

    team = relationship("Team", back_populates="stats")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("team_id", "season", "source", name="_team_season_source_uc"),)


class PipelineRunRecord(Base):
    """One orchestrator execution over a batch of source jobs"""

    __tablename__ = "pipeline_runs"

    id = Column(Integer, primary_key=True, index=True)
    run_type = Column(String, nullable=False, index=True)  # full | incremental | validation | backfill
    status = Column(String, nullable=False, index=True)    # running | completed | partial_success | failed
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    completed_at = Column(DateTime)

    sources_attempted = Column(Integer, default=0)
    sources_succeeded = Column(Integer, default=0)
    sources_failed = Column(Integer, default=0)
    records_processed = Column(Integer, default=0)
    records_created = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)

    errors = Column(JSON, default=list)
    warnings = Column(JSON, default=list)
    run_metadata = Column("metadata", JSON, default=dict)

    job_runs = relationship("JobRunRecord", back_populates="pipeline_run")


class JobRunRecord(Base):
    """A single source job executed inside a pipeline run"""

    __tablename__ = "scraper_runs"

    id = Column(Integer, primary_key=True, index=True)
    pipeline_run_id = Column(Integer, ForeignKey("pipeline_runs.id"), index=True)
    source = Column(String, nullable=False, index=True)
    job_type = Column(String, nullable=False)

    status = Column(String, nullable=False, index=True)  # running | completed | failed
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)

    records_processed = Column(Integer, default=0)
    records_created = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)

    errors = Column(JSON, default=list)
    warnings = Column(JSON, default=list)
    retry_count = Column(Integer, default=0)
    run_metadata = Column("metadata", JSON, default=dict)

    pipeline_run = relationship("PipelineRunRecord", back_populates="job_runs")


class DataFreshness(Base):
    """When each source/data type was last refreshed successfully"""

    __tablename__ = "data_freshness"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String, nullable=False, index=True)
    data_type = Column(String, nullable=False)
    last_updated_at = Column(DateTime, nullable=False, index=True)
    record_count = Column(Integer, default=0)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("source", "data_type", name="_freshness_source_type_uc"),)


class CircuitBreakerState(Base):
    """Persisted circuit breaker for a data source (absent row == closed)"""

    __tablename__ = "circuit_breaker_state"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String, unique=True, nullable=False, index=True)
    state = Column(String(16), nullable=False, default="closed", index=True)  # closed | open | half_open

    failure_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)  # half-open success streak
    last_failure_at = Column(DateTime)
    last_success_at = Column(DateTime)
    open_until = Column(DateTime)  # When the breaker lets a probe through

    updated_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)


# Create all tables
def init_db(bind=None):
    """Initialize database tables"""
    Base.metadata.create_all(bind=bind or engine)


if __name__ == "__main__":
    init_db()
    print("✅ Database tables created")
