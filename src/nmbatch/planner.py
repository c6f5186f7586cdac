from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from nmbatch._logging import get_logger
from nmbatch.config import Configuration, ParallelSettings, VersionEntry
from nmbatch.models import ConfigError, JobDescriptor, PlanningError
from nmbatch.utils import atomic_write_text, read_raw_lines, write_raw_lines

_log = get_logger("planner")

SCRIPT_TEMPLATE = """#!/bin/bash

#$ -wd {working_directory}

{command}
"""

# PARSE_TYPE=2 balances load evenly, TRANSFER_TYPE=1 selects MPI.
# TIMEOUTI waits for a node to become available; TIMEOUT waits for work to finish.
PARAFILE_TEMPLATE = """$GENERAL
NODES={total_nodes} PARSE_TYPE=2 TIMEOUTI=100 TIMEOUT={completion_timeout} PARAPRINT=0 TRANSFER_TYPE=1
$COMMANDS
1: {mpi_exec_path} -wdir "$PWD" -n {head_nodes} ./nonmem $*
2:-wdir "$PWD" -n {worker_nodes} ./nonmem -wnf
$DIRECTORIES
1:NONE
2-[nodes]:worker{{#-1}}"""

REPORT_EXTENSION = ".lst"
PARAFILE_EXTENSION = ".pnm"
SCRIPT_EXTENSION = ".sh"

# No build cache exists yet, so the compiled executable is always rebuilt.
NO_BUILD = False


@dataclass(frozen=True)
class ExecutionPlan:
    version: VersionEntry
    command: str
    script_path: Path
    parafile_path: Path | None = None


def resolve_version(config: Configuration) -> VersionEntry:
    """Pick the requested version tag, or the entry flagged default."""
    requested = config.requested_version
    if requested:
        entry = config.versions.get(requested)
        if entry is None:
            available = ", ".join(sorted(config.versions)) or "<none>"
            raise ConfigError(
                f"nm_version {requested!r} was requested but has no configuration. "
                f"Available: {available}"
            )
        return entry
    default_tag = config.default_version
    if default_tag is None:
        raise ConfigError(
            "No version was supplied and no default version exists in the configuration"
        )
    return config.versions[default_tag]


def report_filename(job: JobDescriptor) -> str:
    return job.filename + REPORT_EXTENSION


def parafile_filename(job: JobDescriptor) -> str:
    return job.filename + PARAFILE_EXTENSION


def script_filename(job: JobDescriptor) -> str:
    return job.filename + SCRIPT_EXTENSION


def build_command(job: JobDescriptor, version: VersionEntry) -> str:
    config = _require_configuration(job)
    executable = os.path.join(version.home, "run", version.executable)
    args = [
        os.path.join(job.output_dir, job.job_file),
        "",
        os.path.join(job.output_dir, report_filename(job)),
        "",
    ]
    if NO_BUILD:
        args.append("--nobuild")
    if config.parallel.parallel:
        args.append("-parafile=" + os.path.join(job.output_dir, parafile_filename(job)))
    return " ".join([executable, *args])


def render_parafile(parallel: ParallelSettings) -> str:
    if parallel.nodes < 1:
        raise PlanningError(f"Parallel node count must be >= 1, got {parallel.nodes}")
    return PARAFILE_TEMPLATE.format(
        total_nodes=parallel.nodes,
        completion_timeout=parallel.timeout,
        mpi_exec_path=parallel.mpi_exec_path,
        head_nodes=1,
        worker_nodes=parallel.nodes - 1,
    )


def write_parafile(job: JobDescriptor) -> Path:
    """Write ``<base>.pnm``; an operator-supplied parafile is copied byte for byte."""
    config = _require_configuration(job)
    log = get_logger("planner", job)
    user_parafile = config.parallel.parafile
    if user_parafile:
        try:
            lines = read_raw_lines(user_parafile)
        except (OSError, ValueError) as exc:
            raise PlanningError(
                f"Unable to read the contents of the parafile provided: {user_parafile}: {exc}"
            ) from exc
    else:
        lines = [f"{line}\n" for line in render_parafile(config.parallel).split("\n")]
    log.debug("Parafile used has contents of: %s", "".join(lines))

    path = Path(job.output_dir) / parafile_filename(job)
    try:
        write_raw_lines(lines, path)
    except (OSError, ValueError) as exc:
        raise PlanningError(f"Unable to write parafile {path}: {exc}") from exc
    return path


def generate_script(job: JobDescriptor, command: str) -> str:
    return SCRIPT_TEMPLATE.format(working_directory=job.output_dir, command=command)


def write_script(job: JobDescriptor, command: str) -> Path:
    path = Path(job.output_dir) / script_filename(job)
    content = generate_script(job, command)
    get_logger("planner", job).debug("Generated script is: %s", content)
    try:
        atomic_write_text(path, content)
        path.chmod(0o755)
    except OSError as exc:
        raise PlanningError(f"Unable to write execution script {path}: {exc}") from exc
    return path


def plan_job(job: JobDescriptor) -> ExecutionPlan:
    """Render everything a staged job needs before it can be launched."""
    config = _require_configuration(job)
    version = resolve_version(config)
    parafile_path = write_parafile(job) if config.parallel.parallel else None
    command = build_command(job, version)
    return ExecutionPlan(
        version=version,
        command=command,
        script_path=write_script(job, command),
        parafile_path=parafile_path,
    )


def _require_configuration(job: JobDescriptor) -> Configuration:
    if job.configuration is None:
        raise PlanningError(f"{job.identity} has no configuration")
    return job.configuration
