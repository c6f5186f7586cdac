from __future__ import annotations

import re
import shutil
import subprocess
import time
from pathlib import Path
from typing import Sequence

from nmbatch._logging import get_logger
from nmbatch.executors.base import LaunchResult
from nmbatch.models import ExecutionError, JobDescriptor
from nmbatch.utils import utc_now_iso

_log = get_logger("executors.sge")
_JOB_ID_RE = re.compile(r"Your job(?:-array)?\s+(\d+)")


def parse_submission_id(output: str) -> str | None:
    match = _JOB_ID_RE.search(output)
    if match:
        return match.group(1)
    return None


class SgeExecutor:
    """Submit the rendered script with ``qsub``; returns as soon as it is queued."""

    name = "sge"
    waits_for_completion = False

    def __init__(
        self,
        *,
        qsub: str = "qsub",
        extra_args: Sequence[str] = ("-V", "-j", "y"),
    ):
        self.qsub = qsub
        self.extra_args = tuple(extra_args)

    def launch(self, job: JobDescriptor, script_path: Path) -> LaunchResult:
        log = get_logger("executors.sge", job)
        if shutil.which(self.qsub) is None:
            raise ExecutionError(f"{self.qsub} is not installed or not available on PATH")

        start_time = utc_now_iso()
        start_perf = time.perf_counter()
        cmd = [self.qsub, *self.extra_args, str(script_path)]
        try:
            completed = subprocess.run(
                cmd,
                cwd=job.output_dir,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as exc:
            raise ExecutionError(
                f"qsub failed for {job.identity} (exit {exc.returncode}): "
                f"{(exc.stderr or '').strip() or exc}"
            ) from exc
        except OSError as exc:
            raise ExecutionError(f"Unable to run {self.qsub}: {exc}") from exc

        submission_id = parse_submission_id(completed.stdout)
        log.info("Submitted %s to the grid (job id %s)", script_path, submission_id)
        return LaunchResult(
            job_identity=job.identity,
            start_time=start_time,
            end_time=utc_now_iso(),
            duration_sec=round(time.perf_counter() - start_perf, 6),
            exit_code=completed.returncode,
            status="submitted",
            submission_id=submission_id,
        )
