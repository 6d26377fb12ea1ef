"""Phase state machine for policy jobs.

The next thing to do with a job is derived purely from its persisted state,
never from how or why it ended up in the queue:

    research PENDING                               -> RESEARCH
    research COMPLETED, audit PENDING, policy set  -> AUDIT
    overall COMPLETED / FAILED                     -> SKIP (terminal)
    anything else while overall PROCESSING         -> STUCK
    anything else                                  -> SKIP
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from policyglass.errors import InvalidTransitionError
from policyglass.models.job import JobStatus, Phase

# Progress checkpoints persisted at each transition
PROGRESS_CREATED = 0
PROGRESS_RESEARCH_STARTED = 10
PROGRESS_RESEARCH_COMPLETED = 50
PROGRESS_AUDIT_STARTED = 60
PROGRESS_AUDIT_COMPLETED = 100

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobState(Protocol):
    id: str
    status: JobStatus
    research_status: JobStatus
    audit_status: JobStatus
    policy_id: int | None


class Transition(str, Enum):
    RESEARCH = "research"
    AUDIT = "audit"
    STUCK = "stuck"
    SKIP = "skip"


def next_transition(job: JobState) -> Transition:
    if job.research_status == JobStatus.PENDING:
        return Transition.RESEARCH
    if (
        job.research_status == JobStatus.COMPLETED
        and job.audit_status == JobStatus.PENDING
        and job.policy_id is not None
    ):
        return Transition.AUDIT
    if job.status in TERMINAL_STATUSES:
        return Transition.SKIP
    if job.status == JobStatus.PROCESSING:
        return Transition.STUCK
    return Transition.SKIP


def derive_overall_status(research: JobStatus, audit: JobStatus) -> JobStatus:
    """Overall status as a function of the two phase statuses."""
    if research == JobStatus.FAILED or audit == JobStatus.FAILED:
        return JobStatus.FAILED
    if research == JobStatus.COMPLETED and audit == JobStatus.COMPLETED:
        return JobStatus.COMPLETED
    if research == JobStatus.PENDING and audit == JobStatus.PENDING:
        return JobStatus.PENDING
    return JobStatus.PROCESSING


def ensure_audit_allowed(job: JobState) -> int:
    """Return the policy id to audit, or raise if research has not finished."""
    if job.research_status != JobStatus.COMPLETED or job.policy_id is None:
        raise InvalidTransitionError(
            f"Audit cannot start while research is {job.research_status.value}",
            job.id,
            Phase.AUDIT.value,
        )
    if job.audit_status != JobStatus.PENDING:
        raise InvalidTransitionError(
            f"Audit already {job.audit_status.value}",
            job.id,
            Phase.AUDIT.value,
        )
    return job.policy_id


def stuck_phase(job: JobState) -> Phase:
    """The phase to blame when a PROCESSING job has nothing actionable left."""
    if job.research_status in (JobStatus.PROCESSING, JobStatus.PENDING):
        return Phase.RESEARCH
    return Phase.AUDIT
