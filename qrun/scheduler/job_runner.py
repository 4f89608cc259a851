import asyncio
import logging
import os
import signal
import time
from typing import Any, Callable, Coroutine, Optional

from qrun.domain.errors import DoNotProcess
from qrun.domain.models import Job, JobOutcome, RunStats
from qrun.domain.states import JobEvent, JobStatus
from qrun.metrics import JOB_DURATION, JOBS_PROCESSED
from qrun.services.events import EventLog

logger = logging.getLogger(__name__)

Callback = Callable[[str, Any], Coroutine[Any, Any, Any]]

KILL_GRACE_SECONDS = 1.0
OUTPUT_LIMIT = 64 * 1024

def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data[-OUTPUT_LIMIT:].decode("utf-8", errors="replace")

class JobRunner:
    """
    Runs one job to a terminal outcome.

    Subprocess mode runs `nice <command>` through the shell in its own
    process group. Callback mode awaits `callback(queue, payload)` with the
    queue name minus the configured prefix.
    Both are bounded by kill_after. The runner only sets job.status; deleting
    or releasing the message is up to the caller.
    """

    def __init__(
        self,
        settings,
        events: EventLog,
        callback: Optional[Callback] = None,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
    ):
        self.settings = settings
        self.events = events
        self.callback = callback
        self.kill_after = settings.kill_after
        self.kill_grace_seconds = kill_grace_seconds
        self._procs = set()

    async def run(self, job: Job) -> JobOutcome:
        job.status = JobStatus.RUNNING
        self.events.emit(
            JobEvent.MESSAGE_PROCESSING_START,
            queue=job.queue_name,
            message_id=job.message_id,
            payload=job.payload,
        )

        start = time.monotonic()
        if self.callback is not None:
            outcome = await self._run_callback(job)
        elif self.settings.archive:
            print(job.body, flush=True)
            outcome = JobOutcome(status=JobStatus.COMPLETE)
        else:
            outcome = await self._run_command(job)
        outcome.duration = time.monotonic() - start

        job.status = outcome.status
        if outcome.status == JobStatus.COMPLETE:
            outcome.stats = RunStats(jobs_succeeded=1)
            JOBS_PROCESSED.labels(queue=job.queue_name, outcome="succeeded").inc()
            self.events.emit(
                JobEvent.MESSAGE_PROCESSING_COMPLETE,
                queue=job.queue_name,
                message_id=job.message_id,
                duration=round(outcome.duration, 3),
            )
        elif outcome.status == JobStatus.REFUSED:
            outcome.stats = RunStats()
            JOBS_PROCESSED.labels(queue=job.queue_name, outcome="refused").inc()
            logger.info("Job %s on %s refused by callback", job.message_id, job.queue_name)
        else:
            outcome.stats = RunStats(jobs_failed=1)
            JOBS_PROCESSED.labels(queue=job.queue_name, outcome="failed").inc()
            self.events.emit(
                JobEvent.MESSAGE_PROCESSING_FAILED,
                queue=job.queue_name,
                message_id=job.message_id,
                duration=round(outcome.duration, 3),
                exit_code=outcome.exit_code,
                signal=outcome.signal,
                killed=outcome.killed,
                error=outcome.error,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            )
        JOB_DURATION.labels(queue=job.queue_name).observe(outcome.duration)
        return outcome

    def _timeout(self) -> Optional[float]:
        return self.kill_after if self.kill_after and self.kill_after > 0 else None

    def _short_name(self, qname: str) -> str:
        prefix = self.settings.prefix
        return qname[len(prefix):] if qname.startswith(prefix) else qname

    async def _run_callback(self, job: Job) -> JobOutcome:
        # Callbacks see the name the job was enqueued under, without the prefix
        queue = self._short_name(job.queue_name)
        try:
            await asyncio.wait_for(self.callback(queue, job.payload), timeout=self._timeout())
            return JobOutcome(status=JobStatus.COMPLETE)
        except DoNotProcess:
            return JobOutcome(status=JobStatus.REFUSED)
        except asyncio.TimeoutError:
            logger.warning("Callback for %s exceeded kill_after=%ss", job.message_id, self.kill_after)
            return JobOutcome(status=JobStatus.FAILED, killed=True, error=f"killed after {self.kill_after}s")
        except Exception as e:
            logger.debug("Callback for %s raised", job.message_id, exc_info=True)
            return JobOutcome(status=JobStatus.FAILED, error=f"{type(e).__name__}: {e}")

    async def _run_command(self, job: Job) -> JobOutcome:
        try:
            proc = await asyncio.create_subprocess_shell(
                f"nice {job.body}",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,  # own process group, so killpg reaches grandchildren
            )
        except OSError as e:
            return JobOutcome(status=JobStatus.FAILED, error=f"{type(e).__name__}: {e}")

        self._procs.add(proc)
        communicate = asyncio.ensure_future(proc.communicate())
        killed = False
        try:
            done, _ = await asyncio.wait({communicate}, timeout=self._timeout())
            if not done:
                killed = True
                logger.warning("Job %s ran past %ss, sending SIGTERM", job.message_id, self.kill_after)
                self._signal_group(proc, signal.SIGTERM)
                done, _ = await asyncio.wait({communicate}, timeout=self.kill_grace_seconds)
                if not done:
                    logger.warning("Job %s survived SIGTERM, sending SIGKILL", job.message_id)
                    self._signal_group(proc, signal.SIGKILL)
            stdout, stderr = await communicate
        except asyncio.CancelledError:
            self._signal_group(proc, signal.SIGKILL)
            raise
        finally:
            self._procs.discard(proc)

        code = proc.returncode
        outcome = JobOutcome(
            status=JobStatus.COMPLETE if code == 0 and not killed else JobStatus.FAILED,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            killed=killed,
        )
        if code is not None and code < 0:
            outcome.signal = -code
        else:
            outcome.exit_code = code
        return outcome

    def kill_all(self):
        """SIGKILLs every running job's process group (second Ctrl-C)."""
        for proc in list(self._procs):
            logger.warning("Killing job process group %s", proc.pid)
            self._signal_group(proc, signal.SIGKILL)

    @staticmethod
    def _signal_group(proc, sig):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            # Already gone
            pass
