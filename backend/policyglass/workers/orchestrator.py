"""In-process scheduler for policy analysis jobs.

:class:`JobOrchestrator` owns the dispatch queue and the pool of in-flight job
tasks, and it drives every job through research, then audit:

1. every ``poll_interval`` seconds it reconciles with the Job Store (jobs that
   are actionable but neither queued nor active are queued again), then
   dispatches queued jobs FIFO while fewer than ``max_concurrency`` run;
2. each dispatched job runs as its own task and performs exactly one phase
   transition, chosen from the job's persisted state;
3. a job whose research just completed is queued again once its task has
   left the pool, so the audit runs on a later tick;
4. an independent timer reaps expired jobs.

Every transition is persisted first and broadcast second. Phase failures are
converted into FAILED state plus an ERROR notification and never escape
:meth:`JobOrchestrator.process_job`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Deque, Dict, Optional, Set, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from policyglass.config import clamp_concurrency
from policyglass.errors import AuditError, InvalidTransitionError, PhaseTimeoutError, ResearchError
from policyglass.models.job import JobStatus, Phase, as_utc
from policyglass.services.executors import AuditExecutor, AuditResult, ResearchExecutor, ResearchResult
from policyglass.services.job_store import CANCELLED_MESSAGE, JobStore, JobView
from policyglass.services.notifications import (
    NotificationHub,
    complete_message,
    error_message,
    job_update_message,
    phase_update_message,
)
from policyglass.utils import job_logger
from policyglass.workers import state_machine
from policyglass.workers.state_machine import Transition

logger = logging.getLogger(__name__)

T = TypeVar("T")

STUCK_JOB_MESSAGE = "Job appears to be stuck - cleaning up"

_PHASE_ERRORS = {Phase.RESEARCH: ResearchError, Phase.AUDIT: AuditError}



def _error_type(exc: BaseException) -> str:
    """Name of the underlying failure, looking through the phase wrappers."""
    if isinstance(exc, (ResearchError, AuditError)) and exc.original is not None:
        return type(exc.original).__name__
    return type(exc).__name__


class OrchestratorStats(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_running: bool
    queue_length: int
    active_count: int
    max_concurrency: int
    total_subscriber_connections: int


class JobOrchestrator:
    """Single authority over which jobs run and how they move between phases."""

    def __init__(
        self,
        store: JobStore,
        hub: NotificationHub,
        research: ResearchExecutor,
        audit: AuditExecutor,
        *,
        max_concurrency: int = 3,
        poll_interval: float = 5.0,
        error_backoff: float = 10.0,
        cleanup_interval: float = 3600.0,
        pending_batch_size: int = 10,
        phase_timeout: float = 300.0,
    ) -> None:
        self.store = store
        self.hub = hub
        self.research = research
        self.audit = audit
        self.max_concurrency = clamp_concurrency(max_concurrency)
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.cleanup_interval = cleanup_interval
        self.pending_batch_size = pending_batch_size
        self.phase_timeout = phase_timeout

        self._queue: Deque[str] = deque()
        self._active: Dict[str, asyncio.Task] = {}
        self._cancelling: Set[str] = set()
        self._stop_event: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._recovered = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._stop_event is not None and not self._stop_event.is_set()

    def start(self) -> None:
        """Start the processing loop and the cleanup timer. No-op when running."""
        if self.is_running:
            logger.info("Background processor already running")
            return

        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._loop_task = asyncio.create_task(self._process_loop(stop_event), name="policyglass-processor")
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(stop_event), name="policyglass-cleanup")
        job_logger.processor_started()

    def stop(self) -> None:
        """Ask the loop to exit after its current iteration.

        In-flight jobs are left to finish on their own.
        """
        if not self.is_running:
            return
        self._stop_event.set()
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
        job_logger.processor_stopped()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop, wait for the loop to exit, then give in-flight jobs ``timeout`` seconds."""
        self.stop()
        tasks = [t for t in (self._loop_task, self._cleanup_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.drain(timeout)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until the jobs in flight right now have finished."""
        current = asyncio.current_task()
        tasks = [task for task in self._active.values() if task is not current]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    @staticmethod
    async def _sleep(stop_event: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _process_loop(self, stop_event: asyncio.Event) -> None:
        logger.info("Starting background processor...")
        while not stop_event.is_set():
            try:
                await self.tick()
                delay = self.poll_interval
            except Exception:
                logger.exception("Error in processing loop")
                delay = self.error_backoff
            await self._sleep(stop_event, delay)
        logger.info("Background processor loop exited")

    async def _cleanup_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self._sleep(stop_event, self.cleanup_interval)
            if stop_event.is_set():
                break
            await self.cleanup_expired_jobs()

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(self, job_id: str) -> bool:
        """Queue ``job_id`` unless it is already queued or running."""
        if job_id in self._active or job_id in self._queue or job_id in self._cancelling:
            return False
        self._queue.append(job_id)
        job_logger.job_queued(job_id, len(self._queue))
        job_logger.queue_stats(len(self._queue), len(self._active), self.max_concurrency)
        return True

    def remove_from_queue(self, job_id: str) -> bool:
        """Drop a job that has not been dispatched yet."""
        try:
            self._queue.remove(job_id)
        except ValueError:
            return False
        logger.info("Job %s removed from processing queue", job_id)
        return True

    def is_queued(self, job_id: str) -> bool:
        return job_id in self._queue

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def queued_jobs(self) -> list[str]:
        return list(self._queue)

    def set_max_concurrency(self, value: int) -> None:
        self.max_concurrency = clamp_concurrency(value)
        logger.info("Max concurrent jobs set to %d", self.max_concurrency)

    async def tick(self) -> int:
        """One reconciliation + dispatch pass. Returns the number of jobs dispatched."""
        try:
            await self._load_pending_jobs()
        finally:
            dispatched = self._dispatch_queued_jobs()
        return dispatched

    async def _load_pending_jobs(self) -> None:
        job_ids = await self.store.list_pending(self.pending_batch_size)
        if not self._recovered:
            # Phases left PROCESSING by a previous process; they fail as stuck.
            interrupted = await self.store.list_interrupted(self.pending_batch_size)
            if interrupted:
                logger.warning("Recovering %d job(s) interrupted mid-phase", len(interrupted))
            job_ids = interrupted + job_ids
            self._recovered = True
        for job_id in job_ids:
            if job_id not in self._queue and job_id not in self._active and job_id not in self._cancelling:
                self._queue.append(job_id)

    def _dispatch_queued_jobs(self) -> int:
        dispatched = 0
        while self._queue and len(self._active) < self.max_concurrency:
            job_id = self._queue.popleft()
            # The task does not start before the next await, so it is registered first
            self._active[job_id] = asyncio.create_task(self._run_job(job_id), name=f"policyglass-job-{job_id}")
            dispatched += 1
        return dispatched

    async def _run_job(self, job_id: str) -> None:
        follow_up = False
        try:
            follow_up = await self.process_job(job_id)
        except Exception:
            logger.exception("Failed to process job %s", job_id)
        finally:
            self._active.pop(job_id, None)
        if follow_up:
            self.enqueue(job_id)

    async def force_process_job(self, job_id: str) -> None:
        """Process ``job_id`` now, bypassing the queue and the concurrency cap."""
        if job_id in self._active:
            raise RuntimeError(f"Job {job_id} is already being processed")
        self.remove_from_queue(job_id)
        self._active[job_id] = asyncio.current_task()
        await self._run_job(job_id)

    # ------------------------------------------------------------------
    # Per-job processing
    # ------------------------------------------------------------------

    async def process_job(self, job_id: str) -> bool:
        """Run the next transition of ``job_id``.

        Returns True when the job has another phase ready to be queued.
        Never raises for phase or store failures.
        """
        started = time.monotonic()
        job_logger.job_started(job_id)
        try:
            if not await self.store.is_valid(job_id):
                logger.info("Job %s is invalid or expired, skipping", job_id)
                return False

            job = await self.store.get(job_id)
            if job is None:
                logger.info("Job %s not found, skipping", job_id)
                return False

            transition = state_machine.next_transition(job)
            if transition is Transition.RESEARCH:
                return await self.process_research_phase(job_id, job.source_url)
            if transition is Transition.AUDIT:
                await self.process_audit_phase(job_id)
                return False
            if transition is Transition.STUCK:
                await self._fail_stuck_job(job_id, state_machine.stuck_phase(job))
                return False

            logger.info("Job %s is %s, nothing to process", job_id, job.status_str)
            return False

        except InvalidTransitionError as exc:
            logger.warning("Rejected transition for job %s: %s", job_id, exc)
            return False
        except Exception as exc:
            job_logger.job_failed(job_id, "unknown", exc)
            await self._fail_after_crash(job_id, exc)
            return False
        finally:
            job_logger.job_finished(job_id, int((time.monotonic() - started) * 1000))

    async def process_research_phase(self, job_id: str, source_url: str) -> bool:
        """Research transition. Returns True when the audit phase is ready."""
        phase_started = time.monotonic()
        job_logger.research_started(job_id, source_url)

        started_at = await self.store.start_research_phase(job_id)
        await self.hub.broadcast(job_id, job_update_message(
            job_id, JobStatus.PROCESSING, state_machine.PROGRESS_RESEARCH_STARTED,
            Phase.RESEARCH, JobStatus.PROCESSING,
        ))
        await self.hub.broadcast(job_id, phase_update_message(
            job_id, Phase.RESEARCH, JobStatus.PROCESSING, started_at=as_utc(started_at),
        ))

        try:
            result: ResearchResult = await self._call_executor(Phase.RESEARCH, job_id, self.research(source_url))
        except Exception as exc:
            await self._fail_phase(job_id, Phase.RESEARCH, exc, state_machine.PROGRESS_RESEARCH_STARTED)
            return False

        completed_at = await self.store.complete_research_phase(job_id, result.result_id, result.confidence)
        job_logger.research_completed(job_id, result.result_id, int((time.monotonic() - phase_started) * 1000))
        await self.hub.broadcast(job_id, job_update_message(
            job_id, JobStatus.PROCESSING, state_machine.PROGRESS_RESEARCH_COMPLETED,
            Phase.RESEARCH, JobStatus.COMPLETED, confidence=result.confidence,
        ))
        await self.hub.broadcast(job_id, phase_update_message(
            job_id, Phase.RESEARCH, JobStatus.COMPLETED,
            completed_at=as_utc(completed_at), confidence=result.confidence, result_id=result.result_id,
        ))
        logger.info("Research phase completed for job %s, policy ID: %s", job_id, result.result_id)
        return True

    async def process_audit_phase(self, job_id: str) -> None:
        """Audit transition. Raises :class:`InvalidTransitionError` unless research completed."""
        job = await self.store.get(job_id)
        if job is None:
            logger.info("Job %s not found, skipping audit", job_id)
            return
        policy_id = state_machine.ensure_audit_allowed(job)

        phase_started = time.monotonic()
        job_logger.audit_started(job_id, policy_id)

        started_at = await self.store.start_audit_phase(job_id)
        await self.hub.broadcast(job_id, job_update_message(
            job_id, JobStatus.PROCESSING, state_machine.PROGRESS_AUDIT_STARTED,
            Phase.AUDIT, JobStatus.PROCESSING,
        ))
        await self.hub.broadcast(job_id, phase_update_message(
            job_id, Phase.AUDIT, JobStatus.PROCESSING, started_at=as_utc(started_at),
        ))

        try:
            result: AuditResult = await self._call_executor(Phase.AUDIT, job_id, self.audit(policy_id))
        except Exception as exc:
            await self._fail_phase(job_id, Phase.AUDIT, exc, state_machine.PROGRESS_AUDIT_STARTED)
            return

        completed_at = await self.store.complete_audit_phase(job_id, result.report_id, result.confidence)
        job_logger.audit_completed(job_id, result.report_id, result.score, int((time.monotonic() - phase_started) * 1000))
        await self.hub.broadcast(job_id, job_update_message(
            job_id, JobStatus.COMPLETED, state_machine.PROGRESS_AUDIT_COMPLETED,
            Phase.AUDIT, JobStatus.COMPLETED, confidence=result.confidence,
        ))
        await self.hub.broadcast(job_id, phase_update_message(
            job_id, Phase.AUDIT, JobStatus.COMPLETED,
            completed_at=as_utc(completed_at), confidence=result.confidence, result_id=result.report_id,
        ))
        await self.hub.broadcast(job_id, complete_message(
            job_id, policy_id, result.report_id, result.score, result.grade, result.confidence,
        ))
        logger.info("Audit phase completed for job %s, audit report ID: %s", job_id, result.report_id)

    async def _call_executor(self, phase: Phase, job_id: str, awaitable: Awaitable[T]) -> T:
        """Await an executor under the phase timeout, wrapping any failure in a :class:`PolicyJobError`."""
        timeout = asyncio.timeout(self.phase_timeout)
        try:
            async with timeout:
                return await awaitable
        except Exception as exc:
            if isinstance(exc, TimeoutError) and timeout.expired():
                raise PhaseTimeoutError(
                    f"{phase.value.capitalize()} phase timeout after {self.phase_timeout:g} seconds",
                    job_id, phase.value, exc,
                ) from exc
            raise _PHASE_ERRORS[phase](str(exc) or type(exc).__name__, job_id, exc) from exc

    async def _fail_phase(self, job_id: str, phase: Phase, exc: BaseException, progress: int) -> None:
        reason = str(exc) or type(exc).__name__
        logger.error("%s phase failed for job %s: %s", phase.value.capitalize(), job_id, reason)
        job_logger.job_failed(job_id, phase.value, exc)

        await self.store.fail_job(job_id, phase, reason)
        await self.hub.broadcast(job_id, job_update_message(
            job_id, JobStatus.FAILED, progress, phase, JobStatus.FAILED, error=reason,
        ))
        await self.hub.broadcast(job_id, error_message(
            job_id, phase.value, reason, {"errorType": _error_type(exc)},
        ))

    async def _fail_stuck_job(self, job_id: str, phase: Phase) -> None:
        logger.warning("Cleaning up stuck job %s (%s phase)", job_id, phase.value)
        await self.store.fail_job(job_id, phase, STUCK_JOB_MESSAGE)
        await self.hub.broadcast(job_id, error_message(job_id, phase.value, STUCK_JOB_MESSAGE))

    async def _fail_after_crash(self, job_id: str, exc: BaseException) -> None:
        """Best effort: fail whichever phase was running when ``exc`` escaped."""
        reason = str(exc) or type(exc).__name__
        try:
            job = await self.store.get(job_id)
            if job is None or job.status in state_machine.TERMINAL_STATUSES:
                return
            phase = Phase.AUDIT if job.research_status == JobStatus.COMPLETED else Phase.RESEARCH
            await self.store.fail_job(job_id, phase, reason)
            await self.hub.broadcast(job_id, error_message(
                job_id, phase.value, reason, {"errorType": type(exc).__name__},
            ))
        except Exception:
            logger.exception("Could not record failure of job %s", job_id)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def cleanup_expired_jobs(self) -> int:
        try:
            count = await self.store.delete_expired()
        except Exception:
            logger.exception("Failed to cleanup expired jobs")
            return 0
        if count:
            job_logger.jobs_cleaned(count)
        return count

    # ------------------------------------------------------------------
    # Outward operations
    # ------------------------------------------------------------------

    async def create_and_enqueue(self, source_url: str) -> str:
        job_id = await self.store.create(source_url)
        job_logger.job_created(job_id, source_url)
        self.enqueue(job_id)
        return job_id

    async def get_status(self, job_id: str) -> Optional[JobView]:
        return await self.store.get_status(job_id)

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not started executing.

        Returns False for jobs already dispatched, finished or unknown.
        """
        if job_id in self._active:
            return False

        self._cancelling.add(job_id)
        try:
            removed = self.remove_from_queue(job_id)
            cancelled = await self.store.cancel_job(job_id)
            if removed and not cancelled:
                # Queued for a later phase; keep its place
                self._queue.appendleft(job_id)
        finally:
            self._cancelling.discard(job_id)

        if cancelled:
            logger.info("Job %s cancelled", job_id)
            await self.hub.broadcast(job_id, error_message(job_id, Phase.RESEARCH.value, CANCELLED_MESSAGE))
        return cancelled

    def get_stats(self) -> OrchestratorStats:
        return OrchestratorStats(
            is_running=self.is_running,
            queue_length=len(self._queue),
            active_count=len(self._active),
            max_concurrency=self.max_concurrency,
            total_subscriber_connections=self.hub.total_connection_count(),
        )
