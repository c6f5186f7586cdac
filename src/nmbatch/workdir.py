from __future__ import annotations

import os
import shutil
import stat
from pathlib import Path
from typing import Iterable

from nmbatch._logging import get_logger
from nmbatch.config import write_configuration
from nmbatch.controlstream import add_path_level_to_data
from nmbatch.models import (
    JobDescriptor,
    NextRunSuggestion,
    StagingError,
    WorkingDirectoryConflictError,
)
from nmbatch.policy import does_directory_contain_outputs
from nmbatch.utils import pad_num, read_raw_lines, write_raw_lines

_log = get_logger("workdir")

IGNORE_FILENAME = ".gitignore"
DEFAULT_IGNORE_CONTENT = (
    "# generated by nmbatch: run artifacts are not tracked\n"
    "*\n"
)


def _shift_data_line(line: str) -> str:
    body = line.rstrip("\r\n")
    return add_path_level_to_data(body) + line[len(body):]


def stage_job_file(job: JobDescriptor) -> Path:
    """Copy the job file into its working directory with the dataset path shifted one level.

    Line endings and any bytes that are not valid UTF-8 are copied unchanged.
    """
    try:
        source_lines = read_raw_lines(job.path)
        mode = stat.S_IMODE(os.stat(job.path).st_mode)
    except (OSError, ValueError) as exc:
        raise StagingError(f"Unable to read the contents of {job.path}: {exc}") from exc

    staged_lines = [_shift_data_line(line) for line in source_lines]
    target = job.staged_path
    try:
        write_raw_lines(staged_lines, target, mode=mode)
    except (OSError, ValueError) as exc:
        raise StagingError(f"Unable to write {target}: {exc}") from exc
    return target


def write_ignore_file(directory: str | Path) -> Path:
    path = Path(directory) / IGNORE_FILENAME
    path.write_text(DEFAULT_IGNORE_CONTENT, encoding="utf-8")
    return path


def prepare_working_directory(
    job: JobDescriptor,
    *,
    write_ignore: bool = False,
    target: str | None = None,
) -> Path:
    """Make ``job.output_dir`` safe to execute into and stage the job file there.

    An existing directory is removed when overwrite is configured. Otherwise
    it is reused only if it holds no outputs of a previous run; anything
    already in it is left alone.
    """
    log = get_logger("workdir", job)
    config = job.configuration
    if config is None:
        raise StagingError(f"{job.identity} has no configuration")
    output_dir = Path(job.output_dir)

    if output_dir.is_dir():
        if config.overwrite:
            log.debug("Removing directory %s", output_dir)
            try:
                shutil.rmtree(output_dir)
            except OSError as exc:
                raise StagingError(f"Unable to remove {output_dir}: {exc}") from exc
        elif does_directory_contain_outputs(output_dir, job.job_file):
            log.debug(
                "Overwrite is disabled and %s holds outputs; halting this job",
                output_dir,
            )
            raise WorkingDirectoryConflictError(output_dir)
        else:
            log.info("No output files detected in %s. Good to continue", output_dir)

    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StagingError(f"Unable to create {output_dir}: {exc}") from exc

    stage_job_file(job)

    try:
        if write_ignore:
            log.debug("Writing initial ignore file")
            write_ignore_file(output_dir)
        write_configuration(config, output_dir, target=target)
    except OSError as exc:
        raise StagingError(
            f"Unable to write job metadata into {output_dir}: {exc}"
        ) from exc
    return output_dir


def find_next_run_directory(
    job_file: str, dir_names: Iterable[str], padding: int
) -> NextRunSuggestion:
    """Suggest the next ``<job>_est_NN`` directory among existing siblings.

    Renumbering is flagged when the existing numbers are not contiguous from 1.
    """
    prefix = f"{os.path.basename(job_file)}_est_"
    existing: list[int] = []
    for name in dir_names:
        if not name.startswith(prefix):
            continue
        number = name[len(prefix):]
        if number.isdigit():
            existing.append(int(number))

    if not existing:
        return NextRunSuggestion(f"{prefix}{pad_num(1, padding)}", False, True)

    existing.sort()
    next_number = existing[-1] + 1
    return NextRunSuggestion(
        suggested_name=f"{prefix}{pad_num(next_number, padding)}",
        needs_renumbering=next_number != len(existing) + 1,
        is_first_run=False,
    )


def suggest_next_run_directory(job: JobDescriptor, *, padding: int = 2) -> NextRunSuggestion:
    try:
        names = [entry.name for entry in os.scandir(job.source_dir) if entry.is_dir()]
    except OSError as exc:
        raise StagingError(f"Unable to list {job.source_dir}: {exc}") from exc
    return find_next_run_directory(job.filename, names, padding)
