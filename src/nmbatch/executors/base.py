from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from nmbatch.models import JobDescriptor


@dataclass(frozen=True)
class LaunchResult:
    job_identity: str
    start_time: str
    end_time: str
    duration_sec: float
    exit_code: int | None
    status: str
    stdout_path: Path | None = None
    stderr_path: Path | None = None
    submission_id: str | None = None


class ExecutionTarget(Protocol):
    name: str
    # False for targets that return once the job is handed to a scheduler.
    waits_for_completion: bool

    def launch(self, job: JobDescriptor, script_path: Path) -> LaunchResult: ...
