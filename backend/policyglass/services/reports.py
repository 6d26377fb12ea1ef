"""Persistence for executor output: policies, audit reports and section scores."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, TypeVar

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session, selectinload, sessionmaker

from policyglass.db.database import SessionLocal
from policyglass.models.policy import AuditReport, Policy, SectionScore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ScoredSection:
    name: str
    score: int
    max_score: int
    commentary: str = ""


class ReportRepository:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self._session_factory = session_factory

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def _work() -> T:
            with self._session_factory() as db:
                return fn(db)

        return await run_in_threadpool(_work)

    async def create_policy(
        self, company_name: str, source_url: str, terms_text: str, raw_response: Optional[str] = None,
    ) -> int:
        def _create(db: Session) -> int:
            policy = Policy(
                company_name=company_name,
                source_url=source_url,
                terms_text=terms_text,
                raw_response=raw_response,
            )
            db.add(policy)
            db.commit()
            return policy.id

        policy_id = await self._run(_create)
        logger.info("Stored policy %s for %s (%s)", policy_id, company_name, source_url)
        return policy_id

    async def get_policy(self, policy_id: int) -> Optional[Policy]:
        return await self._run(lambda db: db.get(Policy, policy_id))

    async def create_audit_report(
        self,
        policy_id: int,
        total_score: int,
        letter_grade: str,
        overall_summary: str,
        confidence: Optional[float],
        sections: Iterable[ScoredSection],
        raw: Optional[dict[str, Any]] = None,
    ) -> int:
        def _create(db: Session) -> int:
            report = AuditReport(
                policy_id=policy_id,
                total_score=total_score,
                letter_grade=letter_grade,
                overall_summary=overall_summary,
                confidence=confidence,
                raw_audit_json=json.dumps(raw) if raw is not None else None,
            )
            report.section_scores = [
                SectionScore(
                    section_name=section.name,
                    score=section.score,
                    max_score=section.max_score,
                    commentary=section.commentary,
                )
                for section in sections
            ]
            db.add(report)
            db.commit()
            return report.id

        report_id = await self._run(_create)
        logger.info("Stored audit report %s for policy %s (%s, %s)", report_id, policy_id, total_score, letter_grade)
        return report_id

    async def get_audit_report(self, report_id: int) -> Optional[AuditReport]:
        def _get(db: Session) -> Optional[AuditReport]:
            return db.get(
                AuditReport,
                report_id,
                options=[selectinload(AuditReport.section_scores), selectinload(AuditReport.policy)],
            )

        return await self._run(_get)
