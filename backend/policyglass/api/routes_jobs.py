from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from policyglass.errors import AppBaseException
from policyglass.models.job import JobStatus
from policyglass.services.job_store import JobStore, JobView
from policyglass.services.notifications import NotificationHub, WebSocketChannel
from policyglass.services.reports import ReportRepository
from policyglass.workers.orchestrator import JobOrchestrator, OrchestratorStats

from .deps import get_hub, get_orchestrator, get_reports, get_store

router = APIRouter()
logger = logging.getLogger(__name__)

ESTIMATED_DURATION_SECONDS = 300


class CamelModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class CreateJobRequest(BaseModel):
    url: str

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Invalid URL format")
        return value


class CreateJobResponse(CamelModel):
    job_id: str
    message: str
    estimated_duration: int


class PolicyInfo(CamelModel):
    id: int
    company_name: str
    source_url: str
    terms_text: str
    created_at: datetime


class SectionInfo(CamelModel):
    section_name: str
    score: int
    max_score: int
    commentary: Optional[str] = None


class AuditReportInfo(CamelModel):
    id: int
    policy_id: int
    total_score: int
    letter_grade: str
    overall_summary: Optional[str] = None
    confidence: Optional[float] = None
    created_at: datetime
    section_scores: List[SectionInfo] = []


class JobStatusResponse(CamelModel):
    job: JobView
    policy: Optional[PolicyInfo] = None
    audit_report: Optional[AuditReportInfo] = None


class ProcessingStatsResponse(CamelModel):
    processing_stats: OrchestratorStats
    timestamp: datetime


class CancelJobResponse(CamelModel):
    message: str
    job_id: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


@router.post("", response_model=CreateJobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    body: CreateJobRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> CreateJobResponse:
    """Create a policy analysis job and queue it."""
    try:
        job_id = await orchestrator.create_and_enqueue(body.url)
    except Exception as exc:
        logger.error("Failed to create policy job: %s", exc, exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create policy analysis job")

    return CreateJobResponse(
        job_id=job_id,
        message="Policy analysis job created successfully",
        estimated_duration=ESTIMATED_DURATION_SECONDS,
    )


@router.get("", response_model=ProcessingStatsResponse)
async def processing_stats(orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> ProcessingStatsResponse:
    """Return scheduler statistics."""
    return ProcessingStatsResponse(processing_stats=orchestrator.get_stats(), timestamp=_now())


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    reports: ReportRepository = Depends(get_reports),
) -> JobStatusResponse:
    """Return a job with its policy and audit report once they exist."""
    try:
        view = await orchestrator.get_status(job_id)
        if view is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

        # A poll on a PENDING job is enough to get it moving again
        if view.status == JobStatus.PENDING:
            orchestrator.enqueue(job_id)

        response = JobStatusResponse(job=view)
        if view.policy_id is not None:
            policy = await reports.get_policy(view.policy_id)
            if policy is not None:
                response.policy = PolicyInfo.model_validate(policy)
        if view.audit_report_id is not None:
            report = await reports.get_audit_report(view.audit_report_id)
            if report is not None:
                response.audit_report = AuditReportInfo.model_validate(report)
        return response
    except HTTPException:
        raise
    except Exception as exc:
        logger.error("Failed to fetch job %s: %s", job_id, exc, exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to retrieve job status")


@router.delete("/{job_id}", response_model=CancelJobResponse)
async def cancel_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    store: JobStore = Depends(get_store),
) -> CancelJobResponse:
    """Cancel a job that has not started processing."""
    job = await store.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.status != JobStatus.PENDING:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Can only cancel pending jobs")

    if not await orchestrator.cancel(job_id):
        raise AppBaseException(status.HTTP_409_CONFLICT, "Job has already started processing")
    return CancelJobResponse(message="Job cancelled successfully", job_id=job_id)


@router.websocket("/{job_id}/ws")
async def job_updates(websocket: WebSocket, job_id: str) -> None:
    """Live notifications for one job.

    Server sends a ``CONNECTION_ESTABLISHED`` frame with the current job view,
    then every JOB_UPDATE / PHASE_UPDATE / ERROR / COMPLETE message of the job.
    A client ``{"type": "PING"}`` is answered with ``{"type": "PONG"}``.
    """
    store: JobStore = get_store(websocket)
    hub: NotificationHub = get_hub(websocket)

    if not await store.is_valid(job_id):
        logger.info("Rejecting WebSocket for unknown or expired job %s", job_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Job not found or expired")
        return

    await websocket.accept()
    channel = WebSocketChannel(websocket)
    hub.subscribe(job_id, channel)

    try:
        view = await store.get_status(job_id)
        await websocket.send_json({
            "type": "CONNECTION_ESTABLISHED",
            "jobId": job_id,
            "message": "WebSocket connection established",
            "job": view.to_wire() if view else None,
            "timestamp": _now().isoformat(),
        })

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring malformed WebSocket message for job %s", job_id)
                continue

            if isinstance(data, dict) and data.get("type") == "PING":
                await websocket.send_json({"type": "PONG", "timestamp": _now().isoformat()})
    except WebSocketDisconnect:
        logger.info("WebSocket for job %s disconnected", job_id)
    finally:
        hub.unsubscribe(job_id, channel)
