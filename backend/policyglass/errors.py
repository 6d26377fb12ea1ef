"""Exception hierarchy for the job pipeline."""

from __future__ import annotations

from typing import Optional


class PolicyJobError(Exception):
    """Failure tied to a specific job and phase."""

    def __init__(
        self,
        message: str,
        job_id: str,
        phase: str,
        original: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.phase = phase
        self.original = original


class ResearchError(PolicyJobError):
    def __init__(self, message: str, job_id: str, original: Optional[BaseException] = None) -> None:
        super().__init__(message, job_id, "research", original)


class AuditError(PolicyJobError):
    def __init__(self, message: str, job_id: str, original: Optional[BaseException] = None) -> None:
        super().__init__(message, job_id, "audit", original)


class PhaseTimeoutError(PolicyJobError):
    """A phase executor did not settle within the configured timeout."""


class InvalidTransitionError(PolicyJobError):
    """A transition was requested that the job's persisted state forbids."""


class AppBaseException(Exception):
    """Domain-level base exception so we can map to JSON responses easily."""

    def __init__(self, status_code: int, detail: str) -> None:  # noqa: D401
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail
