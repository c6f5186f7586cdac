from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from nmbatch.config import Configuration


class NmBatchError(RuntimeError):
    """Base error for orchestration failures."""


class ConfigError(NmBatchError):
    """Raised when the configuration is missing or invalid. Fatal to the run."""


class JobNotFoundError(NmBatchError):
    def __init__(self, path: str | Path):
        self.path = str(path)
        super().__init__(f"Job file not found: {self.path}")


class StagingError(NmBatchError):
    """Raised when a working directory cannot be prepared."""


class WorkingDirectoryConflictError(StagingError):
    def __init__(self, directory: str | Path):
        self.directory = str(directory)
        super().__init__(
            f"The target directory {self.directory} already exists and contains "
            "outputs from a previous run, but overwrite is disabled"
        )


class SharedWorkingDirectoryError(StagingError):
    def __init__(self, directory: str | Path, owner: str):
        self.directory = str(directory)
        self.owner = owner
        super().__init__(
            f"The working directory {self.directory} is already claimed by {owner} "
            "in this batch"
        )


class PlanningError(NmBatchError):
    """Raised when the execution script or parallel file cannot be rendered."""


class ExecutionError(NmBatchError):
    """Raised when launching or running the compute binary fails."""


class PostWorkError(NmBatchError):
    """Raised when result files cannot be copied back or cleaned."""


# Job states, in lifecycle order.
QUEUED = "queued"
STAGING = "staging"
EXECUTING = "executing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"


@dataclass
class JobDescriptor:
    tool_version: str = ""
    job_file: str = ""
    path: str = ""
    data_path: str = ""
    data_md5: str = ""
    filename: str = ""
    extension: str = ""
    source_dir: str = ""
    output_dir: str = ""
    configuration: Configuration | None = None
    error: Exception | None = None

    @property
    def identity(self) -> str:
        """Absolute job path; unique within a batch even when base names repeat."""
        if self.path:
            return self.path
        if isinstance(self.error, JobNotFoundError):
            return self.error.path
        return self.job_file or "<unknown>"

    @property
    def display_name(self) -> str:
        return self.job_file or self.identity

    @property
    def log_identifier(self) -> str:
        return f"[{self.filename or self.display_name}]"

    @property
    def staged_path(self) -> Path:
        return Path(self.output_dir) / self.job_file

    def to_json(self) -> dict[str, Any]:
        return {
            "tool_version": self.tool_version,
            "job_file": self.job_file,
            "path": self.path,
            "data_path": self.data_path,
            "data_md5": self.data_md5,
            "filename": self.filename,
            "extension": self.extension,
            "source_dir": self.source_dir,
            "output_dir": self.output_dir,
            "configuration": (
                None if self.configuration is None else self.configuration.to_json()
            ),
            "error": None if self.error is None else str(self.error),
        }


@dataclass(frozen=True)
class TargetedFile:
    file: str
    # None marks a mandatory file that is included at every level.
    level: int | None


@dataclass(frozen=True)
class CleanInstruction:
    location: str
    files_to_remove: tuple[TargetedFile, ...] = ()


@dataclass(frozen=True)
class CopyInstruction:
    copy_from: str
    copy_to: str
    files_to_copy: tuple[TargetedFile, ...] = ()


@dataclass(frozen=True)
class PostWorkInstructions:
    files_to_copy: CopyInstruction
    files_to_clean: CleanInstruction


@dataclass(frozen=True)
class PostWorkReport:
    copied: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()


@dataclass(frozen=True)
class NextRunSuggestion:
    suggested_name: str
    needs_renumbering: bool
    is_first_run: bool


@dataclass(frozen=True)
class JobFailure:
    job_identity: str
    message: str
    cause: BaseException | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "job": self.job_identity,
            "message": self.message,
            "cause": None if self.cause is None else repr(self.cause),
        }


@dataclass
class BatchResult:
    """Aggregate of one batch; workers mutate it only through the record methods."""

    completed: int = 0
    cancelled: int = 0
    failures: list[JobFailure] = field(default_factory=list)
    states: dict[str, str] = field(default_factory=dict)
    elapsed_sec: float = 0.0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    @property
    def errors(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures

    def set_state(self, job_identity: str, state: str) -> None:
        with self._lock:
            self.states[job_identity] = state

    def record_completed(self, job_identity: str) -> None:
        with self._lock:
            self.completed += 1
            self.states[job_identity] = COMPLETED

    def record_cancelled(self, job_identity: str) -> None:
        with self._lock:
            self.cancelled += 1
            self.states[job_identity] = CANCELLED

    def record_failure(
        self, job_identity: str, message: str, cause: BaseException | None = None
    ) -> None:
        with self._lock:
            self.failures.append(JobFailure(job_identity, message, cause))
            self.states[job_identity] = FAILED

    def to_json(self) -> dict[str, Any]:
        with self._lock:
            return {
                "completed": self.completed,
                "errors": len(self.failures),
                "cancelled": self.cancelled,
                "elapsed_sec": round(self.elapsed_sec, 6),
                "failures": [failure.to_json() for failure in self.failures],
                "states": dict(self.states),
            }
