"""Structured log events for the job pipeline.

Each helper logs one lifecycle event on the ``policyglass.jobs`` logger and
attaches its context through ``extra`` so that JSON/ELK style handlers can
pick the fields up without parsing the message.
"""

import logging
from typing import Any

logger = logging.getLogger("policyglass.jobs")


def _log(level: int, message: str, **context: Any) -> None:
    logger.log(level, "%s %s", message, context, extra={"job_context": context})


def job_created(job_id: str, url: str) -> None:
    _log(logging.INFO, "Job created", job_id=job_id, url=url, phase="job_creation")


def job_queued(job_id: str, queue_length: int) -> None:
    _log(logging.INFO, "Job queued for processing", job_id=job_id, queue_length=queue_length, phase="job_queuing")


def job_started(job_id: str) -> None:
    _log(logging.INFO, "Job processing started", job_id=job_id, phase="job_dispatch")


def research_started(job_id: str, url: str) -> None:
    _log(logging.INFO, "Research phase started", job_id=job_id, url=url, phase="research")


def research_completed(job_id: str, policy_id: int, duration_ms: int) -> None:
    _log(logging.INFO, "Policy research completed", job_id=job_id, policy_id=policy_id,
         duration_ms=duration_ms, phase="research")


def audit_started(job_id: str, policy_id: int) -> None:
    _log(logging.INFO, "Audit phase started", job_id=job_id, policy_id=policy_id, phase="audit")


def audit_completed(job_id: str, audit_report_id: int, score: int, duration_ms: int) -> None:
    _log(logging.INFO, "Audit phase completed", job_id=job_id, audit_report_id=audit_report_id,
         total_score=score, duration_ms=duration_ms, phase="audit")


def job_finished(job_id: str, duration_ms: int) -> None:
    _log(logging.INFO, "Job processing pass finished", job_id=job_id, duration_ms=duration_ms)


def job_failed(job_id: str, phase: str, error: BaseException | str) -> None:
    _log(logging.ERROR, f"Job failed in {phase} phase", job_id=job_id, phase=phase,
         error=str(error), error_type=type(error).__name__ if isinstance(error, BaseException) else "str")


def processor_started() -> None:
    _log(logging.INFO, "Background processor started", phase="processor_startup")


def processor_stopped() -> None:
    _log(logging.INFO, "Background processor stopped", phase="processor_shutdown")


def queue_stats(queue_length: int, active_jobs: int, max_concurrency: int) -> None:
    _log(logging.DEBUG, "Queue statistics updated", queue_length=queue_length,
         active_jobs=active_jobs, max_concurrency=max_concurrency, phase="queue_management")


def jobs_cleaned(expired_jobs: int) -> None:
    _log(logging.INFO, "Expired jobs cleaned up", expired_jobs=expired_jobs, phase="job_cleanup")
