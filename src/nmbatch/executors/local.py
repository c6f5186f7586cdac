from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path

from nmbatch._logging import get_logger
from nmbatch.executors.base import LaunchResult
from nmbatch.models import ExecutionError, JobDescriptor
from nmbatch.utils import utc_now_iso

_log = get_logger("executors.local")


class LocalExecutor:
    """Run the rendered script on this machine and block until it exits."""

    name = "local"
    waits_for_completion = True

    def __init__(self, *, shell: str = "bash"):
        self.shell = shell

    def launch(self, job: JobDescriptor, script_path: Path) -> LaunchResult:
        log = get_logger("executors.local", job)
        work_dir = Path(job.output_dir)
        stdout_path = work_dir / f"{job.filename}.stdout.log"
        stderr_path = work_dir / f"{job.filename}.stderr.log"

        start_time = utc_now_iso()
        start_perf = time.perf_counter()
        log.info("Beginning local execution of %s", script_path)
        with (
            stdout_path.open("w", encoding="utf-8") as stdout_handle,
            stderr_path.open("w", encoding="utf-8") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(
                    [self.shell, str(script_path)],
                    cwd=work_dir,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                    env=os.environ.copy(),
                    start_new_session=True,
                )
            except OSError as exc:
                raise ExecutionError(
                    f"Failed to spawn {script_path} for {job.identity}: {exc}"
                ) from exc
            rc = process.wait()

        duration = time.perf_counter() - start_perf
        status = "success" if rc == 0 else "failed"
        if rc < 0:
            status = "terminated"
        log.info("Local execution finished with exit code %s in %.1fs", rc, duration)

        result = LaunchResult(
            job_identity=job.identity,
            start_time=start_time,
            end_time=utc_now_iso(),
            duration_sec=round(duration, 6),
            exit_code=rc,
            status=status,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )
        if status != "success":
            raise ExecutionError(
                f"{script_path} exited with code {rc} ({status}); see {stderr_path}"
            )
        return result
