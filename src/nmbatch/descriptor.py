from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

from nmbatch import __version__
from nmbatch._logging import get_logger
from nmbatch.config import apply_overrides, load_configuration_for
from nmbatch.controlstream import find_data_path
from nmbatch.models import ConfigError, JobDescriptor, JobNotFoundError, PlanningError
from nmbatch.utils import file_and_ext, md5_file, read_lines

_log = get_logger("descriptor")


def render_output_dir(template: str, filename: str) -> str:
    try:
        rendered = template.format(name=filename)
    except (KeyError, IndexError, ValueError) as exc:
        raise PlanningError(
            f"Unable to render output directory template {template!r}: {exc}"
        ) from exc
    if not rendered.strip():
        raise PlanningError(f"Output directory template {template!r} rendered empty")
    return rendered


def _dataset_details(job_path: str, source_dir: str) -> tuple[str, str]:
    try:
        lines = read_lines(job_path)
    except (OSError, ValueError) as exc:
        _log.warning("Unable to read %s to locate its dataset: %s", job_path, exc)
        return "", ""
    data_ref = find_data_path(lines)
    if not data_ref:
        return "", ""
    data_path = os.path.normpath(os.path.join(source_dir, os.path.expanduser(data_ref)))
    if not os.path.isfile(data_path):
        _log.debug("Dataset %s referenced by %s does not exist", data_path, job_path)
        return data_path, ""
    try:
        return data_path, md5_file(data_path)
    except OSError as exc:
        _log.warning("Unable to hash dataset %s: %s", data_path, exc)
        return data_path, ""


def build_job_descriptor(
    raw_path: str,
    *,
    cwd: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> JobDescriptor:
    """Build the descriptor for one resolved job-file path.

    A missing job file yields a descriptor that only carries the error. A
    missing or invalid configuration raises :class:`ConfigError`, because no
    job can run without one.
    """
    if os.path.isabs(raw_path):
        path = raw_path
    else:
        base = Path(cwd) if cwd is not None else Path.cwd()
        path = str(base / raw_path)
    path = os.path.normpath(path)

    if not os.path.exists(path):
        return JobDescriptor(error=JobNotFoundError(path))

    job = JobDescriptor(tool_version=__version__, path=path)
    job.job_file = os.path.basename(path)
    job.filename, job.extension = file_and_ext(job.job_file)
    job.source_dir = os.path.dirname(path)

    configuration = apply_overrides(load_configuration_for(job.source_dir), overrides)
    if not configuration.versions:
        raise ConfigError(
            "No nonmem versions were loaded from the configuration "
            f"({configuration.source_path}). Make sure the 'nonmem' key and its "
            "children are present"
        )
    job.configuration = configuration

    try:
        job.output_dir = os.path.join(
            job.source_dir, render_output_dir(configuration.output_dir, job.filename)
        )
    except PlanningError as exc:
        job.error = exc
        return job

    job.data_path, job.data_md5 = _dataset_details(path, job.source_dir)
    _log.debug("%s built descriptor %s", job.log_identifier, job.to_json())
    return job
