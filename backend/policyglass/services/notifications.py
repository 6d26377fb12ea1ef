"""Real-time job notifications.

Two halves live here:

* the message contract (``JOB_UPDATE``, ``PHASE_UPDATE``, ``ERROR``,
  ``COMPLETE``), serialised as ``{type, jobId, data, timestamp}``;
* :class:`NotificationHub`, a per-job registry of live client channels that
  broadcasts best-effort and prunes any channel that fails or turns out to be
  closed.

Delivery is at-most-once with no replay. A client that connects late catches
up through the job status query, then follows the channel.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Set, runtime_checkable

from fastapi import WebSocket
from pydantic import BaseModel, ConfigDict, Field
from starlette.websockets import WebSocketState

from policyglass.models.job import JobStatus, Phase

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MessageType(str, Enum):
    JOB_UPDATE = "JOB_UPDATE"
    PHASE_UPDATE = "PHASE_UPDATE"
    ERROR = "ERROR"
    COMPLETE = "COMPLETE"


class NotificationMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: MessageType
    job_id: str = Field(alias="jobId")
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return json.dumps(self.to_wire())


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


def job_update_message(
    job_id: str,
    status: JobStatus,
    progress_percentage: int,
    phase: Phase,
    phase_status: JobStatus,
    confidence: Optional[float] = None,
    error: Optional[str] = None,
) -> NotificationMessage:
    return NotificationMessage(
        type=MessageType.JOB_UPDATE,
        job_id=job_id,
        data=_compact({
            "status": _value(status),
            "progressPercentage": progress_percentage,
            "phase": _value(phase),
            "phaseStatus": _value(phase_status),
            "confidence": confidence,
            "error": error,
        }),
    )


def phase_update_message(
    job_id: str,
    phase: Phase,
    status: JobStatus,
    started_at: Optional[datetime] = None,
    completed_at: Optional[datetime] = None,
    confidence: Optional[float] = None,
    error: Optional[str] = None,
    result_id: Optional[int] = None,
) -> NotificationMessage:
    """``result_id`` is the policy id for research, the report id for audit."""
    return NotificationMessage(
        type=MessageType.PHASE_UPDATE,
        job_id=job_id,
        data=_compact({
            "phase": _value(phase),
            "status": _value(status),
            "startedAt": started_at.isoformat() if started_at else None,
            "completedAt": completed_at.isoformat() if completed_at else None,
            "confidence": confidence,
            "error": error,
            "resultId": result_id,
        }),
    )


def error_message(
    job_id: str,
    phase: str,
    error: str,
    details: Optional[Dict[str, Any]] = None,
) -> NotificationMessage:
    """``phase`` is ``research``, ``audit`` or ``system``."""
    return NotificationMessage(
        type=MessageType.ERROR,
        job_id=job_id,
        data=_compact({"phase": _value(phase), "error": error, "details": details}),
    )


def complete_message(
    job_id: str,
    policy_id: int,
    audit_report_id: int,
    final_score: int,
    letter_grade: str,
    confidence: Optional[float],
) -> NotificationMessage:
    return NotificationMessage(
        type=MessageType.COMPLETE,
        job_id=job_id,
        data=_compact({
            "policyId": policy_id,
            "auditReportId": audit_report_id,
            "finalScore": final_score,
            "letterGrade": letter_grade,
            "confidence": confidence,
        }),
    )


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


@runtime_checkable
class NotificationChannel(Protocol):
    """Transport handle for one subscribed client."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, payload: str) -> None: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


class WebSocketChannel:
    """:class:`NotificationChannel` over a Starlette/FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: str) -> None:
        await self.websocket.send_text(payload)

    async def ping(self) -> None:
        # Starlette exposes no protocol-level ping; a small frame does the same job
        await self.websocket.send_text(json.dumps({"type": "KEEPALIVE", "timestamp": _now().isoformat()}))

    async def close(self) -> None:
        if self.is_open:
            await self.websocket.close()


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class NotificationHub:
    """Per-job subscriber registry with self-healing broadcast."""

    def __init__(self, keepalive_interval: float = 30.0) -> None:
        self._connections: Dict[str, Set[NotificationChannel]] = {}
        self._all: Set[NotificationChannel] = set()
        self.keepalive_interval = keepalive_interval
        self._keepalive_task: Optional[asyncio.Task] = None

    def subscribe(self, job_id: str, channel: NotificationChannel) -> None:
        self._connections.setdefault(job_id, set()).add(channel)
        self._all.add(channel)
        logger.info("Channel subscribed to job %s. Total for job: %d", job_id, self.connection_count(job_id))

    def unsubscribe(self, job_id: str, channel: NotificationChannel) -> None:
        channels = self._connections.get(job_id)
        if channels is not None:
            channels.discard(channel)
            if not channels:
                del self._connections[job_id]
        if not any(channel in others for others in self._connections.values()):
            self._all.discard(channel)
        logger.info("Channel unsubscribed from job %s", job_id)

    def _forget(self, channel: NotificationChannel) -> None:
        self._all.discard(channel)
        for job_id in list(self._connections):
            channels = self._connections[job_id]
            channels.discard(channel)
            if not channels:
                del self._connections[job_id]

    async def broadcast(self, job_id: str, message: NotificationMessage) -> int:
        """Send ``message`` to every open channel of ``job_id``.

        Never raises. Returns the number of channels the message reached.
        """
        channels = self._connections.get(job_id)
        if not channels:
            return 0

        payload = message.to_json()
        dead = []
        delivered = 0
        for channel in list(channels):
            if not channel.is_open:
                dead.append(channel)
                continue
            try:
                await channel.send(payload)
                delivered += 1
            except Exception as exc:
                logger.warning("Failed to send %s for job %s: %s", message.type.value, job_id, exc)
                dead.append(channel)

        for channel in dead:
            self.unsubscribe(job_id, channel)
        return delivered

    def connection_count(self, job_id: str) -> int:
        return len(self._connections.get(job_id, ()))

    def total_connection_count(self) -> int:
        return len(self._all)

    async def ping_all(self) -> int:
        """Probe every channel; prune those that are closed or fail. Returns pruned count."""
        dead = []
        for channel in list(self._all):
            if not channel.is_open:
                dead.append(channel)
                continue
            try:
                await channel.ping()
            except Exception as exc:
                logger.warning("Keep-alive ping failed: %s", exc)
                dead.append(channel)

        for channel in dead:
            self._forget(channel)
        return len(dead)

    async def close_job_connections(self, job_id: str) -> int:
        channels = self._connections.pop(job_id, set())
        for channel in channels:
            self._all.discard(channel)
            try:
                await channel.close()
            except Exception as exc:
                logger.debug("Ignoring close failure for job %s: %s", job_id, exc)
        return len(channels)

    async def close_all(self) -> None:
        for job_id in list(self._connections):
            await self.close_job_connections(job_id)
        self._all.clear()

    # ------------------------------------------------------------------
    # Keep-alive
    # ------------------------------------------------------------------

    def start_keepalive(self) -> None:
        if self._keepalive_task is not None and not self._keepalive_task.done():
            return
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def stop_keepalive(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            pruned = await self.ping_all()
            if pruned:
                logger.info("Keep-alive pruned %d dead channels", pruned)
