from __future__ import annotations

import os
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Sequence

from nmbatch._logging import get_logger
from nmbatch.executors.base import ExecutionTarget
from nmbatch.models import (
    EXECUTING,
    QUEUED,
    STAGING,
    BatchResult,
    ConfigError,
    JobDescriptor,
    NmBatchError,
    SharedWorkingDirectoryError,
)
from nmbatch.planner import plan_job, resolve_version, script_filename
from nmbatch.policy import apply_post_work, new_post_work_instructions
from nmbatch.workdir import prepare_working_directory

_log = get_logger("manager")


def preflight(jobs: Sequence[JobDescriptor]) -> None:
    """Resolve the compute version of every runnable job before anything starts.

    Raises :class:`ConfigError` so a bad version selection stops the whole run.
    """
    for job in jobs:
        if job.error is None and job.configuration is not None:
            resolve_version(job.configuration)


def claim_working_directories(
    jobs: Sequence[JobDescriptor], result: BatchResult
) -> list[JobDescriptor]:
    """Give each working directory to the first job that renders it.

    Later jobs resolving to the same directory are failed before anything
    starts, so no two workers ever share a directory.
    """
    owners: dict[str, JobDescriptor] = {}
    runnable: list[JobDescriptor] = []
    for job in jobs:
        if job.error is None and job.output_dir:
            key = os.path.realpath(job.output_dir)
            owner = owners.get(key)
            if owner is None:
                owners[key] = job
            else:
                exc = SharedWorkingDirectoryError(job.output_dir, owner.identity)
                get_logger("manager", job).error("%s", exc)
                result.record_failure(job.identity, f"Failed during staging: {exc}", exc)
                continue
        runnable.append(job)
    return runnable


class JobManager:
    """Run a batch of jobs on a fixed number of worker slots.

    A job holds its slot from staging through execution and, for targets that
    wait for completion, the post-run copy and cleanup. One job failing never
    fails another; failures are collected in the :class:`BatchResult`.
    """

    def __init__(
        self,
        executor: ExecutionTarget,
        *,
        max_workers: int = 1,
        cancel_event: threading.Event | None = None,
        cleanup_exclusions: Sequence[str] = (),
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.executor = executor
        self.max_workers = max_workers
        self.cancel_event = cancel_event or threading.Event()
        self.cleanup_exclusions = tuple(cleanup_exclusions)
        self._fatal: list[ConfigError] = []
        self._fatal_lock = threading.Lock()

    def cancel(self) -> None:
        """Keep queued jobs from starting; running jobs finish normally."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self, jobs: Sequence[JobDescriptor]) -> BatchResult:
        preflight(jobs)
        result = BatchResult()
        for job in jobs:
            result.set_state(job.identity, QUEUED)
        runnable = claim_working_directories(jobs, result)

        started = time.perf_counter()
        _log.info(
            "Starting batch of %d jobs on %d workers (target=%s)",
            len(jobs),
            self.max_workers,
            self.executor.name,
        )
        pool = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="nmbatch"
        )
        try:
            futures = [pool.submit(self._process, job, result) for job in runnable]
            for future in as_completed(futures):
                future.result()
        except KeyboardInterrupt:
            _log.error("Interrupted; queued jobs will not be started")
            self.cancel()
            raise
        finally:
            pool.shutdown(wait=True)
            result.elapsed_sec = time.perf_counter() - started

        _post_work_notice(result)
        if self._fatal:
            raise self._fatal[0]
        return result

    def _process(self, job: JobDescriptor, result: BatchResult) -> None:
        identity = job.identity
        log = get_logger("manager", job)
        if self.cancelled:
            log.info("Skipping; the batch was cancelled before this job started")
            result.record_cancelled(identity)
            return
        if job.error is not None:
            result.record_failure(identity, "Unable to build the job", job.error)
            return

        stage = STAGING
        try:
            result.set_state(identity, STAGING)
            prepare_working_directory(
                job,
                write_ignore=job.configuration.git,
                target=self.executor.name,
            )
            plan = plan_job(job)

            stage = EXECUTING
            result.set_state(identity, EXECUTING)
            self.executor.launch(job, plan.script_path)

            if self.executor.waits_for_completion:
                stage = "post-work"
                instructions = new_post_work_instructions(
                    job,
                    cleanup_exclusions=self.cleanup_exclusions,
                    mandatory_copy_files=(script_filename(job),),
                )
                report = apply_post_work(instructions)
                log.debug(
                    "Copied %d files and removed %d files",
                    len(report.copied),
                    len(report.removed),
                )
        except ConfigError as exc:
            log.error("Fatal configuration error: %s", exc)
            result.record_failure(identity, str(exc), exc)
            with self._fatal_lock:
                self._fatal.append(exc)
            self.cancel()
            return
        except (NmBatchError, OSError, ValueError, subprocess.SubprocessError) as exc:
            log.error("Failed during %s: %s", stage, exc)
            result.record_failure(identity, f"Failed during {stage}: {exc}", exc)
            return

        result.record_completed(identity)
        log.info("Completed")


def _post_work_notice(result: BatchResult) -> None:
    if result.errors:
        _log.error("%d errors were experienced during the run", result.errors)
        for failure in result.failures:
            _log.error(
                "Errors were experienced while running job %s. Details are %s",
                failure.job_identity,
                failure.message,
            )
    _log.info(
        "%d jobs completed in %.3fs (%d cancelled)",
        result.completed,
        result.elapsed_sec,
        result.cancelled,
    )
