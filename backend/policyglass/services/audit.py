"""Default audit executor: score a stored policy and persist the report.

Scoring framework (maximum points per section, 100 in total):

=============================  ===
Fair Use & Access              10
Data Collection                15
Data Sharing                   15
Rights & Controls              15
Liability & Security           15
Policy Changes                 10
Children & Vulnerable           5
Psychological & Algorithmic     5
Content Rights                  5
Jurisdiction & Enforcement      5
=============================  ===

The model's own total and grade are never trusted: section scores are clamped
to their range, then summed and graded here.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from policyglass.services import llm
from policyglass.services.executors import AuditResult
from policyglass.services.reports import ReportRepository, ScoredSection

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8

# (response key, display name, max score)
SECTIONS: tuple[tuple[str, str, int], ...] = (
    ("fairUse", "Fair Use & Access", 10),
    ("dataCollection", "Data Collection", 15),
    ("dataSharing", "Data Sharing", 15),
    ("rightsAndControls", "Rights & Controls", 15),
    ("liabilityAndSecurity", "Liability & Security", 15),
    ("policyChanges", "Policy Changes", 10),
    ("childrenVulnerable", "Children & Vulnerable", 5),
    ("psychologicalAlgorithmic", "Psychological & Algorithmic", 5),
    ("contentRights", "Content Rights", 5),
    ("jurisdictionEnforcement", "Jurisdiction & Enforcement", 5),
)

AUDIT_PROMPT = """You audit consumer-facing policies. Score the policy below and answer with JSON only:
{{"sections": {{<key>: {{"score": <int>, "commentary": <string>}}, ...}},
  "overallSummary": <string>, "confidence": <float 0-1>}}

Section keys and maximum scores: {sections}

Policy text:
{terms_text}
"""


def letter_grade(score: int) -> str:
    """A (90-100), B (75-89), C (60-74), D (40-59), E (0-39)."""
    if score >= 90:
        return "A"
    if score >= 75:
        return "B"
    if score >= 60:
        return "C"
    if score >= 40:
        return "D"
    return "E"


def _to_int(value: Any) -> int:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return 0


def parse_sections(payload: dict[str, Any]) -> list[ScoredSection]:
    raw_sections = payload.get("sections") or {}
    if not isinstance(raw_sections, dict):
        raise ValueError("Audit response 'sections' must be an object")

    scored = []
    for key, name, max_score in SECTIONS:
        entry = raw_sections.get(key) or {}
        score = _to_int(entry.get("score")) if isinstance(entry, dict) else 0
        commentary = entry.get("commentary", "") if isinstance(entry, dict) else ""
        scored.append(ScoredSection(
            name=name,
            score=max(0, min(score, max_score)),
            max_score=max_score,
            commentary=str(commentary),
        ))
    return scored


def parse_confidence(payload: dict[str, Any]) -> float:
    try:
        value = float(payload.get("confidence", DEFAULT_CONFIDENCE))
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(value, 1.0))


class PolicyAuditor:
    """Callable audit executor: ``await auditor(policy_id) -> AuditResult``."""

    def __init__(
        self,
        reports: ReportRepository,
        ollama_url: str,
        model: str,
        http_timeout: float = 120.0,
    ) -> None:
        self.reports = reports
        self.ollama_url = ollama_url
        self.model = model
        self.http_timeout = http_timeout

    async def __call__(self, policy_id: int) -> AuditResult:
        policy = await self.reports.get_policy(policy_id)
        if policy is None:
            raise ValueError(f"Policy with ID {policy_id} not found")

        raw = await llm.generate(
            AUDIT_PROMPT.format(
                sections=", ".join(f"{key} ({max_score})" for key, _, max_score in SECTIONS),
                terms_text=policy.terms_text,
            ),
            base_url=self.ollama_url,
            model=self.model,
            json_format=True,
            timeout=self.http_timeout,
        )
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Audit response is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ValueError("Audit response must be a JSON object")

        sections = parse_sections(payload)
        total = sum(section.score for section in sections)
        grade = letter_grade(total)
        confidence = parse_confidence(payload)

        reported_total = payload.get("totalScore")
        if reported_total is not None and abs(_to_int(reported_total) - total) > 1:
            logger.warning("Score mismatch for policy %s: model reported %s, calculated %s",
                           policy_id, reported_total, total)

        report_id = await self.reports.create_audit_report(
            policy_id=policy_id,
            total_score=total,
            letter_grade=grade,
            overall_summary=str(payload.get("overallSummary", "")),
            confidence=confidence,
            sections=sections,
            raw=payload,
        )
        return AuditResult(report_id=report_id, score=total, grade=grade, confidence=confidence)
