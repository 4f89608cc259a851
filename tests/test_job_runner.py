import asyncio
import signal
import time

import pytest

from qrun.domain.errors import DoNotProcess
from qrun.domain.models import Job
from qrun.domain.states import JobStatus
from qrun.scheduler.job_runner import JobRunner
from qrun.services.events import EventLog
from qrun.settings import Settings


def make_job(body: str) -> Job:
    return Job(
        message_id="m1",
        receipt_handle="rh1",
        queue_name="qdone_test",
        queue_url="https://sqs.example/qdone_test",
        payload=body,
        body=body,
        started=0.0,
        visibility_timeout=30,
        extend_at_second=15,
    )


def make_runner(callback=None, **overrides):
    settings = Settings(disable_log=True, **overrides)
    return JobRunner(settings, EventLog(settings), callback=callback, kill_grace_seconds=0.2)


@pytest.mark.asyncio
async def test_successful_command():
    job = make_job("true")
    outcome = await make_runner().run(job)
    assert outcome.status == JobStatus.COMPLETE
    assert job.status == JobStatus.COMPLETE
    assert outcome.exit_code == 0
    assert outcome.stats.jobs_succeeded == 1


@pytest.mark.asyncio
async def test_failing_command_keeps_output():
    job = make_job("sh -c 'echo out; echo err >&2; exit 3'")
    outcome = await make_runner().run(job)
    assert outcome.status == JobStatus.FAILED
    assert outcome.exit_code == 3
    assert outcome.stdout.strip() == "out"
    assert outcome.stderr.strip() == "err"
    assert outcome.stats.jobs_failed == 1


@pytest.mark.asyncio
async def test_command_killed_after_timeout():
    job = make_job("sleep 10")
    start = time.monotonic()
    outcome = await make_runner(kill_after=1).run(job)
    assert time.monotonic() - start < 5
    assert outcome.status == JobStatus.FAILED
    assert outcome.killed
    assert outcome.signal is not None


@pytest.mark.asyncio
async def test_command_ignoring_sigterm_is_killed():
    job = make_job("sh -c \"trap '' TERM; sleep 10\"")
    start = time.monotonic()
    outcome = await make_runner(kill_after=1).run(job)
    assert time.monotonic() - start < 5
    assert outcome.status == JobStatus.FAILED
    assert outcome.killed


@pytest.mark.asyncio
async def test_archive_mode_prints_command(capsys):
    outcome = await make_runner(archive=True).run(make_job("rm -rf /tmp/nothing"))
    assert outcome.status == JobStatus.COMPLETE
    assert capsys.readouterr().out == "rm -rf /tmp/nothing\n"


@pytest.mark.asyncio
async def test_callback_success():
    seen = []

    async def handle(queue, payload):
        seen.append((queue, payload))

    outcome = await make_runner(callback=handle).run(make_job("hello"))
    assert outcome.status == JobStatus.COMPLETE
    assert seen == [("test", "hello")]


@pytest.mark.asyncio
async def test_callback_error_fails_job():
    async def handle(queue, payload):
        raise ValueError("bad payload")

    outcome = await make_runner(callback=handle).run(make_job("hello"))
    assert outcome.status == JobStatus.FAILED
    assert outcome.error == "ValueError: bad payload"


@pytest.mark.asyncio
async def test_callback_refusal():
    async def handle(queue, payload):
        raise DoNotProcess()

    outcome = await make_runner(callback=handle).run(make_job("hello"))
    assert outcome.status == JobStatus.REFUSED
    assert outcome.stats.jobs_run == 0


@pytest.mark.asyncio
async def test_slow_callback_is_cancelled():
    async def handle(queue, payload):
        await asyncio.sleep(10)

    outcome = await make_runner(callback=handle, kill_after=1).run(make_job("hello"))
    assert outcome.status == JobStatus.FAILED
    assert outcome.killed


@pytest.mark.asyncio
async def test_callback_sees_name_without_prefix():
    seen = []

    async def handle(queue, payload):
        seen.append(queue)

    job = make_job("hello")
    job.queue_name = "jobs_test"
    await make_runner(callback=handle, prefix="jobs_").run(job)
    assert seen == ["test"]


@pytest.mark.asyncio
async def test_kill_signals_wait_for_deadline_and_grace():
    settings = Settings(disable_log=True, kill_after=1)
    runner = JobRunner(settings, EventLog(settings))
    sent = []

    def record(proc, sig):
        sent.append((time.monotonic(), sig))
        JobRunner._signal_group(proc, sig)

    runner._signal_group = record
    start = time.monotonic()
    outcome = await runner.run(make_job("sh -c \"trap '' TERM; sleep 10\""))

    assert outcome.killed
    (term_at, term), (kill_at, kill) = sent
    assert (term, kill) == (signal.SIGTERM, signal.SIGKILL)
    assert term_at - start >= 1.0
    assert kill_at - term_at >= 1.0
