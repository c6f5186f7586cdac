from __future__ import annotations

import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest

from nmbatch.config import Configuration, VersionEntry
from nmbatch.executors.base import LaunchResult
from nmbatch.manager import JobManager
from nmbatch.models import (
    CANCELLED,
    COMPLETED,
    FAILED,
    ConfigError,
    ExecutionError,
    JobDescriptor,
    JobNotFoundError,
    SharedWorkingDirectoryError,
)

_VERSIONS = {"nm74": VersionEntry("/opt/nm74", "nmfe74", default=True)}


def _make_job(tmp_path: Path, name: str, **config_fields: object) -> JobDescriptor:
    config_fields.setdefault("versions", _VERSIONS)
    job_path = tmp_path / f"{name}.mod"
    job_path.write_text("$PROBLEM test\n$DATA data.csv\n", encoding="utf-8")
    return JobDescriptor(
        job_file=job_path.name,
        path=str(job_path),
        filename=name,
        extension="mod",
        source_dir=str(tmp_path),
        output_dir=str(tmp_path / name),
        configuration=Configuration(**config_fields),
    )


class _FakeExecutor:
    name = "fake"

    def __init__(
        self,
        *,
        waits_for_completion: bool = True,
        fail: set[str] | None = None,
        delay: float = 0.05,
    ):
        self.waits_for_completion = waits_for_completion
        self.fail = fail or set()
        self.delay = delay
        self.launched: list[str] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def launch(self, job: JobDescriptor, script_path: Path) -> LaunchResult:
        with self._lock:
            self.launched.append(job.filename)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.delay)
            if job.filename in self.fail:
                raise ExecutionError(f"{job.filename} exited with code 1")
            (Path(job.output_dir) / f"{job.filename}.lst").write_text(
                "report", encoding="utf-8"
            )
            (Path(job.output_dir) / "FDATA").write_text("", encoding="utf-8")
        finally:
            with self._lock:
                self.active -= 1
        return LaunchResult(
            job_identity=job.identity,
            start_time="",
            end_time="",
            duration_sec=self.delay,
            exit_code=0,
            status="success",
        )


def test_concurrency_never_exceeds_worker_count(tmp_path: Path) -> None:
    jobs = [_make_job(tmp_path, f"run{index:03d}") for index in range(1, 7)]
    executor = _FakeExecutor()

    result = JobManager(executor, max_workers=2).run(jobs)

    assert result.ok
    assert result.completed == 6
    assert 1 <= executor.peak <= 2
    assert sorted(executor.launched) == [job.filename for job in jobs]
    assert set(result.states.values()) == {COMPLETED}


def test_failure_is_isolated_to_its_job(tmp_path: Path) -> None:
    jobs = [_make_job(tmp_path, name) for name in ("run001", "run002", "run003")]
    executor = _FakeExecutor(fail={"run002"})

    result = JobManager(executor, max_workers=3).run(jobs)

    assert result.completed == 2
    assert result.errors == 1
    assert result.failures[0].job_identity == jobs[1].identity
    assert "during executing" in result.failures[0].message
    assert result.states[jobs[1].identity] == FAILED
    assert (tmp_path / "run001.sh").exists()
    assert not (tmp_path / "run002.sh").exists()


def test_local_post_work_copies_script_and_cleans(tmp_path: Path) -> None:
    job = _make_job(tmp_path, "run001", copy_lvl=1, clean_lvl=1)

    result = JobManager(_FakeExecutor()).run([job])

    assert result.ok
    assert (tmp_path / "run001.sh").exists()
    assert (tmp_path / "run001.lst").read_text(encoding="utf-8") == "report"
    assert not (tmp_path / "run001" / "FDATA").exists()


def test_cleanup_exclusions_are_kept(tmp_path: Path) -> None:
    job = _make_job(tmp_path, "run001", clean_lvl=1)

    JobManager(_FakeExecutor(), cleanup_exclusions=("FDATA",)).run([job])

    assert (tmp_path / "run001" / "FDATA").exists()


def test_grid_target_skips_post_work(tmp_path: Path) -> None:
    job = _make_job(tmp_path, "run001", copy_lvl=1, clean_lvl=1)

    result = JobManager(_FakeExecutor(waits_for_completion=False)).run([job])

    assert result.ok
    assert not (tmp_path / "run001.sh").exists()
    assert (tmp_path / "run001" / "FDATA").exists()


def test_descriptor_errors_are_reported_per_job(tmp_path: Path) -> None:
    missing = JobDescriptor(error=JobNotFoundError(tmp_path / "run404.mod"))
    good = _make_job(tmp_path, "run001")

    result = JobManager(_FakeExecutor()).run([missing, good])

    assert result.completed == 1
    assert result.errors == 1
    assert result.failures[0].job_identity == str(tmp_path / "run404.mod")


def test_conflicting_working_directory_fails_only_that_job(tmp_path: Path) -> None:
    first = _make_job(tmp_path, "run001")
    second = _make_job(tmp_path, "run002")
    (tmp_path / "run001").mkdir()
    (tmp_path / "run001" / "run001.lst").write_text("old", encoding="utf-8")
    executor = _FakeExecutor()

    result = JobManager(executor).run([first, second])

    assert executor.launched == ["run002"]
    assert result.states[first.identity] == FAILED
    assert "during staging" in result.failures[0].message
    assert (tmp_path / "run001" / "run001.lst").read_text(encoding="utf-8") == "old"


def test_cancel_before_run_leaves_jobs_unstarted(tmp_path: Path) -> None:
    jobs = [_make_job(tmp_path, name) for name in ("run001", "run002")]
    executor = _FakeExecutor()
    manager = JobManager(executor)
    manager.cancel()

    result = manager.run(jobs)

    assert executor.launched == []
    assert result.cancelled == 2
    assert set(result.states.values()) == {CANCELLED}
    assert not (tmp_path / "run001").exists()


def test_cancel_mid_batch_lets_running_job_finish(tmp_path: Path) -> None:
    jobs = [_make_job(tmp_path, f"run{index:03d}") for index in range(1, 5)]
    cancel_event = threading.Event()

    class _CancellingExecutor(_FakeExecutor):
        def launch(self, job: JobDescriptor, script_path: Path) -> LaunchResult:
            cancel_event.set()
            return super().launch(job, script_path)

    executor = _CancellingExecutor()
    result = JobManager(executor, max_workers=1, cancel_event=cancel_event).run(jobs)

    assert executor.launched == ["run001"]
    assert result.completed == 1
    assert result.cancelled == 3


def test_unknown_requested_version_fails_before_any_job_starts(tmp_path: Path) -> None:
    job = _make_job(tmp_path, "run001", requested_version="nm99")
    executor = _FakeExecutor()

    with pytest.raises(ConfigError, match="nm99"):
        JobManager(executor).run([job])

    assert executor.launched == []
    assert not (tmp_path / "run001").exists()


def test_max_workers_must_be_positive() -> None:
    with pytest.raises(ValueError):
        JobManager(_FakeExecutor(), max_workers=0)


def test_jobs_sharing_a_working_directory_do_not_overlap(tmp_path: Path) -> None:
    mod_job = _make_job(tmp_path, "run001")
    ctl_path = tmp_path / "run001.ctl"
    ctl_path.write_text("$PROBLEM test\n", encoding="utf-8")
    ctl_job = replace(mod_job, job_file=ctl_path.name, path=str(ctl_path), extension="ctl")
    executor = _FakeExecutor(delay=0.2)

    result = JobManager(executor, max_workers=2).run([mod_job, ctl_job, mod_job])

    assert executor.launched == ["run001"]
    assert executor.peak == 1
    assert result.completed == 1
    assert result.errors == 2
    assert all(
        isinstance(failure.cause, SharedWorkingDirectoryError)
        for failure in result.failures
    )
    assert result.states[ctl_job.identity] == FAILED
    assert result.failures[0].job_identity == ctl_job.identity
    assert mod_job.identity in result.failures[0].message


def test_same_base_name_in_different_directories_is_tracked_separately(
    tmp_path: Path,
) -> None:
    (tmp_path / "a").mkdir()
    (tmp_path / "b").mkdir()
    first = _make_job(tmp_path / "a", "run001")
    second = _make_job(tmp_path / "b", "run001")
    class _FailSecond(_FakeExecutor):
        def launch(self, job: JobDescriptor, script_path: Path) -> LaunchResult:
            if job.path == second.path:
                raise ExecutionError("run001 exited with code 1")
            return super().launch(job, script_path)

    executor = _FailSecond()
    result = JobManager(executor, max_workers=2).run([first, second])

    assert result.states == {first.identity: COMPLETED, second.identity: FAILED}
    assert result.completed == 1
    assert result.failures[0].job_identity == str(tmp_path / "b" / "run001.mod")
