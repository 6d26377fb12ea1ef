import asyncio
from datetime import timedelta

import pytest

from policyglass.errors import InvalidTransitionError
from policyglass.models.job import JobStatus
from policyglass.services.job_store import CANCELLED_MESSAGE, JobStore
from policyglass.workers.orchestrator import STUCK_JOB_MESSAGE, JobOrchestrator

from tests.fakes import FakeAudit, FakeChannel, FakeResearch

URL = "https://example.com/privacy"


def make_orchestrator(store, hub, research=None, audit=None, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("error_backoff", 0.01)
    return JobOrchestrator(store, hub, research or FakeResearch(), audit or FakeAudit(), **kwargs)


async def wait_for(predicate, timeout=2.0):
    async with asyncio.timeout(timeout):
        while not await predicate():
            await asyncio.sleep(0.01)


async def run_until_idle(orchestrator, rounds=10):
    for _ in range(rounds):
        await orchestrator.tick()
        await orchestrator.drain()


def statuses(channel, message_type="PHASE_UPDATE"):
    return [(m["data"]["phase"], m["data"]["status"]) for m in channel.of_type(message_type)]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_research_phase_broadcasts_and_requeues(store, hub):
    orchestrator = make_orchestrator(store, hub)
    channel = FakeChannel()
    job_id = await orchestrator.create_and_enqueue(URL)
    hub.subscribe(job_id, channel)

    assert await orchestrator.tick() == 1
    await orchestrator.drain()

    assert statuses(channel) == [("research", "PROCESSING"), ("research", "COMPLETED")]
    assert channel.of_type("PHASE_UPDATE")[1]["data"]["resultId"] == 42
    assert orchestrator.research.calls == [URL]
    assert orchestrator.is_queued(job_id)
    assert not orchestrator.is_active(job_id)

    job = await store.get(job_id)
    assert job.research_status == JobStatus.COMPLETED
    assert job.policy_id == 42
    assert job.status == JobStatus.PROCESSING
    assert job.progress_percentage == 50


@pytest.mark.asyncio
async def test_audit_phase_completes_job(store, hub):
    orchestrator = make_orchestrator(store, hub)
    channel = FakeChannel()
    job_id = await orchestrator.create_and_enqueue(URL)
    hub.subscribe(job_id, channel)

    await run_until_idle(orchestrator, rounds=3)

    view = await orchestrator.get_status(job_id)
    assert view.status == JobStatus.COMPLETED
    assert view.research_status == JobStatus.COMPLETED
    assert view.audit_status == JobStatus.COMPLETED
    assert view.progress_percentage == 100
    assert view.audit_report_id == 7
    assert view.audit_confidence == 0.9
    assert orchestrator.audit.calls == [42]

    complete = channel.of_type("COMPLETE")
    assert len(complete) == 1
    assert complete[0]["data"]["finalScore"] == 82
    assert complete[0]["data"]["letterGrade"] == "B"
    assert complete[0]["data"]["policyId"] == 42
    assert complete[0]["data"]["auditReportId"] == 7

    types = [m["type"] for m in channel.messages]
    last_phase = max(i for i, t in enumerate(types) if t == "PHASE_UPDATE")
    assert channel.messages[last_phase]["data"]["status"] == "COMPLETED"
    assert types[last_phase + 1] == "COMPLETE"
    assert not orchestrator.is_queued(job_id)


@pytest.mark.asyncio
async def test_progress_is_monotonic(store, hub, monkeypatch):
    progress = []
    update = store.update

    async def recording_update(job_id, **fields):
        if "progress_percentage" in fields:
            progress.append(fields["progress_percentage"])
        await update(job_id, **fields)

    monkeypatch.setattr(store, "update", recording_update)
    orchestrator = make_orchestrator(store, hub)
    job_id = await orchestrator.create_and_enqueue(URL)

    await run_until_idle(orchestrator, rounds=3)

    assert (await store.get(job_id)).progress_percentage == 100
    assert progress == [10, 50, 60, 100]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_research_failure_fails_job(store, hub):
    orchestrator = make_orchestrator(store, hub, research=FakeResearch(error=RuntimeError("timeout")))
    channel = FakeChannel()
    job_id = await orchestrator.create_and_enqueue(URL)
    hub.subscribe(job_id, channel)

    await run_until_idle(orchestrator, rounds=3)

    job = await store.get(job_id)
    assert job.research_status == JobStatus.FAILED
    assert job.status == JobStatus.FAILED
    assert job.research_error == "timeout"
    assert job.audit_status == JobStatus.PENDING

    errors = channel.of_type("ERROR")
    assert len(errors) == 1
    assert errors[0]["data"]["phase"] == "research"
    assert errors[0]["data"]["error"] == "timeout"
    assert errors[0]["data"]["details"] == {"errorType": "RuntimeError"}
    assert orchestrator.audit.calls == []
    assert not orchestrator.is_queued(job_id)


@pytest.mark.asyncio
async def test_research_timeout_cancels_executor(store, hub):
    research = FakeResearch(gate=asyncio.Event())
    orchestrator = make_orchestrator(store, hub, research=research, phase_timeout=0.05)
    job_id = await orchestrator.create_and_enqueue(URL)

    await orchestrator.tick()
    await orchestrator.drain(timeout=2.0)

    job = await store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.research_error == "Research phase timeout after 0.05 seconds"
    assert research.cancelled is True


@pytest.mark.asyncio
async def test_audit_failure_fails_job(store, hub):
    orchestrator = make_orchestrator(store, hub, audit=FakeAudit(error=ValueError("bad audit json")))
    channel = FakeChannel()
    job_id = await orchestrator.create_and_enqueue(URL)
    hub.subscribe(job_id, channel)

    await run_until_idle(orchestrator, rounds=3)

    job = await store.get(job_id)
    assert job.research_status == JobStatus.COMPLETED
    assert job.audit_status == JobStatus.FAILED
    assert job.audit_error == "bad audit json"
    assert job.status == JobStatus.FAILED
    assert [m["data"]["phase"] for m in channel.of_type("ERROR")] == ["audit"]
    assert channel.of_type("COMPLETE") == []


@pytest.mark.asyncio
async def test_stuck_job_is_failed(store, hub):
    orchestrator = make_orchestrator(store, hub)
    channel = FakeChannel()
    job_id = await store.create(URL)
    await store.start_research_phase(job_id)  # as if the process died mid-research
    hub.subscribe(job_id, channel)

    await orchestrator.force_process_job(job_id)

    job = await store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.research_status == JobStatus.FAILED
    assert job.research_error == STUCK_JOB_MESSAGE
    assert channel.of_type("ERROR")[0]["data"]["error"] == STUCK_JOB_MESSAGE
    assert orchestrator.research.calls == []


@pytest.mark.asyncio
async def test_audit_transition_rejected_before_research(store, hub):
    orchestrator = make_orchestrator(store, hub)
    job_id = await store.create(URL)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.process_audit_phase(job_id)

    job = await store.get(job_id)
    assert job.audit_status == JobStatus.PENDING
    assert job.status == JobStatus.PENDING
    assert orchestrator.audit.calls == []


@pytest.mark.asyncio
async def test_terminal_job_is_left_alone(store, hub):
    orchestrator = make_orchestrator(store, hub)
    job_id = await orchestrator.create_and_enqueue(URL)
    await run_until_idle(orchestrator, rounds=3)
    before = await store.get(job_id)

    assert await orchestrator.process_job(job_id) is False

    after = await store.get(job_id)
    assert after.status == JobStatus.COMPLETED
    assert after.updated_at == before.updated_at
    assert orchestrator.research.calls == [URL]


# ---------------------------------------------------------------------------
# Queue discipline
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_enqueue_is_idempotent(store, hub):
    orchestrator = make_orchestrator(store, hub)
    job_id = await store.create(URL)

    assert orchestrator.enqueue(job_id) is True
    assert orchestrator.enqueue(job_id) is False
    assert orchestrator.get_stats().queue_length == 1

    assert await orchestrator.tick() == 1
    assert orchestrator.enqueue(job_id) is False
    await orchestrator.drain()
    assert orchestrator.research.calls == [URL]


@pytest.mark.asyncio
async def test_concurrency_bound_and_fifo(store, hub):
    gate = asyncio.Event()
    observed = []
    orchestrator = None

    def on_call(_url):
        observed.append(orchestrator.get_stats().active_count)

    research = FakeResearch(gate=gate, on_call=on_call)
    orchestrator = make_orchestrator(store, hub, research=research, max_concurrency=1)
    urls = [f"https://example.com/{n}" for n in range(3)]
    job_ids = [await store.create(url) for url in urls]
    for job_id in job_ids:
        orchestrator.enqueue(job_id)

    assert await orchestrator.tick() == 1
    assert await orchestrator.tick() == 0
    stats = orchestrator.get_stats()
    assert (stats.active_count, stats.queue_length) == (1, 2)

    gate.set()
    await run_until_idle(orchestrator, rounds=8)

    assert research.calls == urls
    assert max(observed) == 1
    for job_id in job_ids:
        assert (await store.get(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_remove_from_queue_does_not_touch_active_job(store, hub):
    gate = asyncio.Event()
    research = FakeResearch(gate=gate)
    orchestrator = make_orchestrator(store, hub, research=research)
    job_id = await orchestrator.create_and_enqueue(URL)

    await orchestrator.tick()
    while not research.calls:
        await asyncio.sleep(0.01)

    assert orchestrator.remove_from_queue(job_id) is False
    assert await orchestrator.cancel(job_id) is False

    gate.set()
    await orchestrator.drain()
    assert (await store.get(job_id)).research_status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_remove_from_queue_before_dispatch(store, hub):
    orchestrator = make_orchestrator(store, hub)
    job_id = await store.create(URL)
    orchestrator.enqueue(job_id)

    assert orchestrator.remove_from_queue(job_id) is True
    assert orchestrator.remove_from_queue(job_id) is False
    assert orchestrator.remove_from_queue("never-queued") is False


@pytest.mark.asyncio
async def test_cancel_persists_so_reconciliation_skips_it(store, hub):
    orchestrator = make_orchestrator(store, hub)
    channel = FakeChannel()
    job_id = await orchestrator.create_and_enqueue(URL)
    hub.subscribe(job_id, channel)

    assert await orchestrator.cancel(job_id) is True
    assert await orchestrator.tick() == 0

    job = await store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.research_error == CANCELLED_MESSAGE
    assert channel.of_type("ERROR")[0]["data"]["error"] == CANCELLED_MESSAGE
    assert orchestrator.research.calls == []
    assert await orchestrator.cancel(job_id) is False


@pytest.mark.asyncio
async def test_force_process_rejects_active_job(store, hub):
    gate = asyncio.Event()
    orchestrator = make_orchestrator(store, hub, research=FakeResearch(gate=gate))
    job_id = await orchestrator.create_and_enqueue(URL)
    await orchestrator.tick()

    with pytest.raises(RuntimeError):
        await orchestrator.force_process_job(job_id)

    gate.set()
    await orchestrator.drain()


@pytest.mark.asyncio
async def test_reconciliation_recovers_jobs_after_restart(store, hub):
    pending_id = await store.create("https://example.com/a")
    parked_id = await store.create("https://example.com/b")
    await store.start_research_phase(parked_id)
    await store.complete_research_phase(parked_id, policy_id=5, confidence=0.7)

    # Fresh instance with an empty queue
    orchestrator = make_orchestrator(store, hub)
    await run_until_idle(orchestrator, rounds=4)

    assert (await store.get(pending_id)).status == JobStatus.COMPLETED
    assert (await store.get(parked_id)).status == JobStatus.COMPLETED
    assert sorted(orchestrator.audit.calls) == [5, 42]


@pytest.mark.asyncio
async def test_restart_fails_jobs_interrupted_mid_phase(store, hub):
    researching_id = await store.create("https://example.com/a")
    await store.start_research_phase(researching_id)
    auditing_id = await store.create("https://example.com/b")
    await store.start_research_phase(auditing_id)
    await store.complete_research_phase(auditing_id, policy_id=5, confidence=0.7)
    await store.start_audit_phase(auditing_id)

    # Previous process died with both phases still PROCESSING
    orchestrator = make_orchestrator(store, hub)
    await run_until_idle(orchestrator, rounds=2)

    researching = await store.get(researching_id)
    assert researching.status == JobStatus.FAILED
    assert researching.research_error == STUCK_JOB_MESSAGE
    auditing = await store.get(auditing_id)
    assert auditing.status == JobStatus.FAILED
    assert auditing.research_status == JobStatus.COMPLETED
    assert auditing.audit_error == STUCK_JOB_MESSAGE
    assert orchestrator.research.calls == []
    assert orchestrator.audit.calls == []
    assert not orchestrator.is_queued(researching_id)


def test_set_max_concurrency_clamps(store, hub):
    orchestrator = make_orchestrator(store, hub, max_concurrency=50)
    assert orchestrator.max_concurrency == 10
    orchestrator.set_max_concurrency(0)
    assert orchestrator.max_concurrency == 1
    orchestrator.set_max_concurrency(4)
    assert orchestrator.get_stats().max_concurrency == 4


def test_stats_shape(store, hub):
    orchestrator = make_orchestrator(store, hub)
    hub.subscribe("job-1", FakeChannel())

    stats = orchestrator.get_stats().model_dump(by_alias=True)
    assert stats == {
        "isRunning": False,
        "queueLength": 0,
        "activeCount": 0,
        "maxConcurrency": 3,
        "totalSubscriberConnections": 1,
    }


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_expired_job_is_skipped_and_reaped(session_factory, hub):
    store = JobStore(session_factory, ttl=timedelta(seconds=-1))
    orchestrator = make_orchestrator(store, hub)
    job_id = await store.create(URL)

    assert await store.list_pending() == []
    assert await orchestrator.process_job(job_id) is False
    assert orchestrator.research.calls == []
    assert (await store.get(job_id)).status == JobStatus.PENDING

    assert await orchestrator.cleanup_expired_jobs() == 1
    assert await orchestrator.get_status(job_id) is None


@pytest.mark.asyncio
async def test_unknown_job_is_skipped(store, hub):
    orchestrator = make_orchestrator(store, hub)
    assert await orchestrator.process_job("missing") is False


# ---------------------------------------------------------------------------
# Background loop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_loop_runs_jobs_to_completion(store, hub):
    orchestrator = make_orchestrator(store, hub)
    orchestrator.start()
    loop_task = orchestrator._loop_task
    orchestrator.start()
    assert orchestrator._loop_task is loop_task
    assert orchestrator.get_stats().is_running is True

    try:
        job_id = await orchestrator.create_and_enqueue(URL)

        async def done():
            job = await store.get(job_id)
            return job.status == JobStatus.COMPLETED

        await wait_for(done)
    finally:
        await orchestrator.shutdown(timeout=1.0)

    assert orchestrator.is_running is False
    assert loop_task.done()


@pytest.mark.asyncio
async def test_loop_survives_store_errors(store, hub, monkeypatch):
    list_pending = store.list_pending
    failures = []

    async def flaky_list_pending(limit=10, now=None):
        if not failures:
            failures.append(1)
            raise ConnectionError("database unavailable")
        return await list_pending(limit, now)

    monkeypatch.setattr(store, "list_pending", flaky_list_pending)
    job_id = await store.create(URL)
    orchestrator = make_orchestrator(store, hub)
    orchestrator.start()

    try:
        async def done():
            return (await store.get(job_id)).status == JobStatus.COMPLETED

        await wait_for(done)
    finally:
        await orchestrator.shutdown(timeout=1.0)

    assert failures == [1]
