"""SQLAlchemy model & helpers for policy analysis jobs.

A job carries one overall status plus a sub-record per phase (research, then
audit). Timestamps are stored as naive UTC.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SAEnum, Float, Integer, String, Text

from policyglass.db.base import Base

JOB_TYPE_POLICY_ANALYSIS = "policy_analysis"


def utcnow() -> datetime:
    """Naive UTC "now", matching what the database hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Tag a naive UTC timestamp read back from the database as UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class JobStatus(str, Enum):
    """Enum representing the lifecycle of a job or of one of its phases."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Phase(str, Enum):
    RESEARCH = "research"
    AUDIT = "audit"


def _new_job_id() -> str:
    return str(uuid.uuid4())


class PolicyJob(Base):
    """Persistent representation of a research -> audit job."""

    __tablename__ = "policy_jobs"

    id = Column(String(36), primary_key=True, default=_new_job_id)
    job_type = Column(String(50), nullable=False, default=JOB_TYPE_POLICY_ANALYSIS)
    source_url = Column(Text, nullable=False)
    status = Column(SAEnum(JobStatus, native_enum=False), nullable=False, default=JobStatus.PENDING, index=True)
    progress_percentage = Column(Integer, nullable=False, default=0)

    # Research phase
    research_status = Column(SAEnum(JobStatus, native_enum=False), nullable=False, default=JobStatus.PENDING)
    research_started_at = Column(DateTime, nullable=True)
    research_completed_at = Column(DateTime, nullable=True)
    research_error = Column(Text, nullable=True)
    research_confidence = Column(Float, nullable=True)
    policy_id = Column(Integer, nullable=True)

    # Audit phase
    audit_status = Column(SAEnum(JobStatus, native_enum=False), nullable=False, default=JobStatus.PENDING)
    audit_started_at = Column(DateTime, nullable=True)
    audit_completed_at = Column(DateTime, nullable=True)
    audit_error = Column(Text, nullable=True)
    audit_confidence = Column(Float, nullable=True)
    audit_report_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)

    @classmethod
    def new(cls, source_url: str, ttl: timedelta, now: datetime | None = None) -> "PolicyJob":
        now = now or utcnow()
        return cls(
            id=_new_job_id(),
            job_type=JOB_TYPE_POLICY_ANALYSIS,
            source_url=source_url,
            status=JobStatus.PENDING,
            progress_percentage=0,
            research_status=JobStatus.PENDING,
            audit_status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())

    # Helper to convert enum to plain string for JSON responses
    @property
    def status_str(self) -> str:
        return self.status.value if isinstance(self.status, JobStatus) else str(self.status)
