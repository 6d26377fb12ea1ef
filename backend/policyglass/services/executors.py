"""Result types and call signatures of the two phase executors.

An executor is any async callable; the orchestrator treats it as opaque, slow
and fallible.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional


@dataclass(frozen=True)
class ResearchResult:
    result_id: int
    confidence: Optional[float] = None


@dataclass(frozen=True)
class AuditResult:
    report_id: int
    score: int
    grade: str
    confidence: Optional[float] = None


ResearchExecutor = Callable[[str], Awaitable[ResearchResult]]
AuditExecutor = Callable[[int], Awaitable[AuditResult]]
