from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from policyglass.services.reports import ReportRepository

from .deps import get_reports
from .routes_jobs import AuditReportInfo, PolicyInfo

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/policy/{policy_id}", response_model=PolicyInfo)
async def get_policy(policy_id: int, reports: ReportRepository = Depends(get_reports)) -> PolicyInfo:
    """Return a researched policy by ID."""
    policy = await reports.get_policy(policy_id)
    if policy is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Policy not found")
    return PolicyInfo.model_validate(policy)


@router.get("/audit/report/{report_id}", response_model=AuditReportInfo)
async def get_audit_report(report_id: int, reports: ReportRepository = Depends(get_reports)) -> AuditReportInfo:
    """Return an audit report with its section scores."""
    report = await reports.get_audit_report(report_id)
    if report is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit report not found")
    return AuditReportInfo.model_validate(report)
