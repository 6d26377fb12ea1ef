# Namespace for ORM models.
from .job import JobStatus, Phase, PolicyJob
from .policy import AuditReport, Policy, SectionScore

__all__ = ["AuditReport", "JobStatus", "Phase", "Policy", "PolicyJob", "SectionScore"]
