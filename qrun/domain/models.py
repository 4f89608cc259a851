from dataclasses import dataclass, field
from typing import Optional, Any

from qrun.domain.states import JobStatus

@dataclass
class Job:
    message_id: str
    receipt_handle: str
    queue_name: str
    queue_url: str
    payload: Any
    body: str

    started: float
    visibility_timeout: int
    extend_at_second: int
    status: JobStatus = JobStatus.WAITING

    group_id: Optional[str] = None

    def runtime(self, now: float) -> float:
        return now - self.started

@dataclass(frozen=True)
class QueuePair:
    name: str
    url: str

    @property
    def is_fifo(self) -> bool:
        return self.name.endswith(".fifo")

    def base_name(self) -> str:
        return self.name[: -len(".fifo")] if self.is_fifo else self.name

    def is_fail(self, fail_suffix: str) -> bool:
        return self.base_name().endswith(fail_suffix)

    def is_dead(self, dlq_suffix: str) -> bool:
        return self.base_name().endswith(dlq_suffix)

@dataclass
class RunStats:
    no_jobs: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0

    def add(self, other: "RunStats") -> "RunStats":
        self.no_jobs += other.no_jobs
        self.jobs_succeeded += other.jobs_succeeded
        self.jobs_failed += other.jobs_failed
        return self

    @property
    def jobs_run(self) -> int:
        return self.jobs_succeeded + self.jobs_failed

@dataclass
class JobOutcome:
    status: JobStatus
    stats: RunStats = field(default_factory=RunStats)

    exit_code: Optional[int] = None
    signal: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None
    killed: bool = False
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETE
