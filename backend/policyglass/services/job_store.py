"""Durable job records.

:class:`JobStore` is the single source of truth for job state. The
orchestrator's in-memory queue is only a cache of dispatch intent rebuilt from
here after a restart.

Session work is synchronous SQLAlchemy executed in Starlette's threadpool so
that every store call is a suspension point for the event loop.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, TypeVar

from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.orm import Session, sessionmaker

from policyglass.db.database import SessionLocal
from policyglass.errors import PolicyJobError
from policyglass.models.job import JobStatus, Phase, PolicyJob, as_utc, utcnow
from policyglass.workers import state_machine

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL = timedelta(hours=24)
CANCELLED_MESSAGE = "Job cancelled before processing started"

# Columns the orchestrator may write through ``update``
UPDATABLE_FIELDS = frozenset({
    "status",
    "progress_percentage",
    "research_status",
    "research_started_at",
    "research_completed_at",
    "research_error",
    "research_confidence",
    "policy_id",
    "audit_status",
    "audit_started_at",
    "audit_completed_at",
    "audit_error",
    "audit_confidence",
    "audit_report_id",
})


class JobView(BaseModel):
    """Client view of a job, shared by polling and by new subscribers."""

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    job_type: str
    source_url: str
    status: JobStatus
    progress_percentage: int

    research_status: JobStatus
    research_started_at: Optional[datetime] = None
    research_completed_at: Optional[datetime] = None
    research_error: Optional[str] = None
    research_confidence: Optional[float] = None
    policy_id: Optional[int] = None

    audit_status: JobStatus
    audit_started_at: Optional[datetime] = None
    audit_completed_at: Optional[datetime] = None
    audit_error: Optional[str] = None
    audit_confidence: Optional[float] = None
    audit_report_id: Optional[int] = None

    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    @field_validator(
        "research_started_at", "research_completed_at", "audit_started_at", "audit_completed_at",
        "created_at", "updated_at", "expires_at",
    )
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class JobStore:
    """Create, read, update and reap :class:`PolicyJob` rows."""

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        ttl: timedelta = DEFAULT_TTL,
    ) -> None:
        self._session_factory = session_factory
        self.ttl = ttl

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def _work() -> T:
            with self._session_factory() as db:
                return fn(db)

        return await run_in_threadpool(_work)

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    async def create(self, source_url: str) -> str:
        def _create(db: Session) -> str:
            job = PolicyJob.new(source_url, self.ttl)
            db.add(job)
            db.commit()
            return job.id

        job_id = await self._run(_create)
        logger.info("Created job %s for %s", job_id, source_url)
        return job_id

    async def get(self, job_id: str) -> Optional[PolicyJob]:
        return await self._run(lambda db: db.get(PolicyJob, job_id))

    async def exists(self, job_id: str) -> bool:
        return await self.get(job_id) is not None

    async def is_valid(self, job_id: str, now: Optional[datetime] = None) -> bool:
        """True when the job exists and has not passed its expiry."""
        job = await self.get(job_id)
        return job is not None and not job.is_expired(now)

    async def update(self, job_id: str, **fields: Any) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")

        def _update(db: Session) -> None:
            job = db.get(PolicyJob, job_id)
            if job is None:
                raise PolicyJobError("Failed to update job status: job not found", job_id, "system")
            for key, value in fields.items():
                setattr(job, key, value)
            job.updated_at = utcnow()
            db.commit()

        await self._run(_update)

    async def list_pending(self, limit: int = 10, now: Optional[datetime] = None) -> List[str]:
        """Ids of unexpired jobs with an actionable next phase, oldest first.

        Besides brand-new PENDING jobs this includes jobs parked between
        research and audit, so a restart picks them up again.
        """
        def _list(db: Session) -> List[str]:
            cutoff = now or utcnow()
            awaiting_audit = and_(
                PolicyJob.research_status == JobStatus.COMPLETED,
                PolicyJob.audit_status == JobStatus.PENDING,
                PolicyJob.policy_id.is_not(None),
                PolicyJob.status == JobStatus.PROCESSING,
            )
            stmt = (
                select(PolicyJob.id)
                .where(or_(PolicyJob.status == JobStatus.PENDING, awaiting_audit))
                .where(PolicyJob.expires_at > cutoff)
                .order_by(PolicyJob.created_at.asc())
                .limit(limit)
            )
            return list(db.scalars(stmt).all())

        return await self._run(_list)

    async def list_interrupted(self, limit: int = 10, now: Optional[datetime] = None) -> List[str]:
        """Ids of unexpired jobs left mid-phase, i.e. a phase still PROCESSING.

        Only meaningful right after start-up, before this process has
        dispatched anything: such jobs were running when a previous process died.
        """
        def _list(db: Session) -> List[str]:
            cutoff = now or utcnow()
            stmt = (
                select(PolicyJob.id)
                .where(PolicyJob.status == JobStatus.PROCESSING)
                .where(or_(
                    PolicyJob.research_status == JobStatus.PROCESSING,
                    PolicyJob.audit_status == JobStatus.PROCESSING,
                ))
                .where(PolicyJob.expires_at > cutoff)
                .order_by(PolicyJob.created_at.asc())
                .limit(limit)
            )
            return list(db.scalars(stmt).all())

        return await self._run(_list)

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every job past ``expires_at``, whatever its status."""
        def _delete(db: Session) -> int:
            cutoff = now or utcnow()
            result = db.execute(delete(PolicyJob).where(PolicyJob.expires_at <= cutoff))
            db.commit()
            return result.rowcount or 0

        count = await self._run(_delete)
        if count:
            logger.info("Cleaned up %d expired jobs", count)
        return count

    async def get_status(self, job_id: str) -> Optional[JobView]:
        """Full client view of a job; ``None`` for unknown ids."""
        job = await self.get(job_id)
        if job is None:
            return None
        return JobView.model_validate(job)

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    async def start_research_phase(self, job_id: str, now: Optional[datetime] = None) -> datetime:
        started = now or utcnow()
        await self.update(
            job_id,
            status=JobStatus.PROCESSING,
            research_status=JobStatus.PROCESSING,
            research_started_at=started,
            progress_percentage=state_machine.PROGRESS_RESEARCH_STARTED,
        )
        return started

    async def complete_research_phase(
        self, job_id: str, policy_id: int, confidence: Optional[float], now: Optional[datetime] = None,
    ) -> datetime:
        completed = now or utcnow()
        await self.update(
            job_id,
            research_status=JobStatus.COMPLETED,
            research_completed_at=completed,
            research_confidence=confidence,
            policy_id=policy_id,
            progress_percentage=state_machine.PROGRESS_RESEARCH_COMPLETED,
        )
        return completed

    async def start_audit_phase(self, job_id: str, now: Optional[datetime] = None) -> datetime:
        started = now or utcnow()
        await self.update(
            job_id,
            audit_status=JobStatus.PROCESSING,
            audit_started_at=started,
            progress_percentage=state_machine.PROGRESS_AUDIT_STARTED,
        )
        return started

    async def complete_audit_phase(
        self, job_id: str, audit_report_id: int, confidence: Optional[float], now: Optional[datetime] = None,
    ) -> datetime:
        completed = now or utcnow()
        await self.update(
            job_id,
            status=JobStatus.COMPLETED,
            audit_status=JobStatus.COMPLETED,
            audit_completed_at=completed,
            audit_confidence=confidence,
            audit_report_id=audit_report_id,
            progress_percentage=state_machine.PROGRESS_AUDIT_COMPLETED,
        )
        return completed

    async def fail_job(self, job_id: str, phase: Phase, error: str) -> None:
        """Mark ``phase`` FAILED with ``error``; the job as a whole follows."""
        phase = Phase(phase)
        now = utcnow()
        if phase is Phase.RESEARCH:
            fields = dict(research_status=JobStatus.FAILED, research_error=error, research_completed_at=now)
        else:
            fields = dict(audit_status=JobStatus.FAILED, audit_error=error, audit_completed_at=now)
        fields["status"] = JobStatus.FAILED
        await self.update(job_id, **fields)

    async def cancel_job(self, job_id: str) -> bool:
        """Fail a job that has not started yet. Returns False once it has."""
        def _cancel(db: Session) -> bool:
            job = db.get(PolicyJob, job_id)
            if job is None or job.status != JobStatus.PENDING or job.research_status != JobStatus.PENDING:
                return False
            now = utcnow()
            job.research_status = JobStatus.FAILED
            job.research_error = CANCELLED_MESSAGE
            job.research_completed_at = now
            job.status = state_machine.derive_overall_status(job.research_status, job.audit_status)
            job.updated_at = now
            db.commit()
            return True

        return await self._run(_cancel)
