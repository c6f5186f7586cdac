"""Level-based retention policy for job artifacts.

Clean and copy levels are integers; every table key at or below the
configured level is included. The tables are static so the decision for a
job depends only on its names, its level and, for parallel runs, a listing
of its working directory.
"""

from __future__ import annotations

import os
import re
import shutil
from pathlib import Path
from typing import Iterable, Mapping, Sequence

from nmbatch._logging import get_logger
from nmbatch.controlstream import find_output_files
from nmbatch.models import (
    CleanInstruction,
    CopyInstruction,
    JobDescriptor,
    PostWorkError,
    PostWorkInstructions,
    PostWorkReport,
    TargetedFile,
)
from nmbatch.utils import file_and_ext, read_lines

_log = get_logger("policy")

TEMPORARY_FILES: tuple[str, ...] = (
    "background.set",
    "compile.lnk",
    "FCON",
    "FDATA",
    "FMSG",
    "FREPORT",
    "FSIZES",
    "FSTREAM",
    "FSUBS",
    "FSUBS.0",
    "FSUBS.o",
    "FSUBS_MU.F90",
    "FSUBS.f90",
    "fsubs.f90",
    "FSUBS2",
    "gfortran.txt",
    "GFCOMPILE.BAT",
    "INTER",
    "licfile.set",
    "linkc.lnk",
    "LINK.LNK",
    "LINKC.LNK",
    "locfile.set",
    "maxlim.set",
    "newline",
    "nmexec.set",
    "nmpathlist.txt",
    "nmprd4p.mod",
    "nobuild.set",
    "parafile.set",
    "parafprint.set",
    "prcompile.set",
    "prdefault.set",
    "prsame.set",
    "PRSIZES.f90",
    "rundir.set",
    "runpdir.set",
    "simparon.set",
    "temp_dir",
    "tprdefault.set",
    "trskip.set",
    "worker.set",
    "xmloff.set",
    "fort.2001",
    "fort.2002",
    "flushtime.set",
    "nonmem",
    "FPWARN",
    "condorarguments.set",
    "condoropenmpiscript.set",
    "condor.set",
    "mpiloc",
    "nmmpi.sh",
    "temp.out",
    "trashfile.xxx",
)

MSF_SUFFIXES: tuple[str, ...] = (
    "",
    "_ETAS",
    "_RMAT",
    "_SMAT",
    ".msf",
    "_ETAS.msf",
    "_RMAT.msf",
    "_SMAT.msf",
)

COPY_EXTENSIONS: Mapping[int, tuple[str, ...]] = {
    1: (".xml", ".grd", ".shk", ".cor", ".cov", ".ext", ".lst"),
    2: (".clt", ".coi", ".cpu", ".shm", ".phi"),
    3: MSF_SUFFIXES,
}

PARALLEL_ARTIFACT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"worker[0-9]+"),
    re.compile(r"fort\.[0-9]+"),
)

# Level used when checking a directory for evidence of a previous run.
CONFLICT_CHECK_LEVEL = 3


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def _levels_up_to(table: Mapping[int, Sequence[str]], level: int) -> Iterable[str]:
    for key in sorted(table):
        if key <= level:
            yield from table[key]


def msf_variants(filename: str) -> list[str]:
    """Restart-file names for *filename*: a leading ``run`` becomes ``msfb``."""
    stem = "msfb" + filename[3:] if filename.startswith("run") else filename
    return [f"{stem}{suffix}" for suffix in MSF_SUFFIXES]


def cleanable_files(filename: str, level: int) -> list[str]:
    table = {1: (*TEMPORARY_FILES, *msf_variants(filename))}
    return _unique(_levels_up_to(table, level))


def parallel_artifacts(directory: str | Path) -> list[str]:
    """Worker directories and transfer scratch files left by a parallel run."""
    try:
        names = sorted(entry.name for entry in os.scandir(directory))
    except OSError as exc:
        _log.warning(
            "Error reading directory %s for parallel files to clean up: %s",
            directory,
            exc,
        )
        return []
    return [
        name
        for name in names
        if any(pattern.fullmatch(name) for pattern in PARALLEL_ARTIFACT_PATTERNS)
    ]


def files_to_clean(job: JobDescriptor, *exceptions: str) -> CleanInstruction:
    config = job.configuration
    level = config.clean_lvl if config is not None else 0
    candidates = cleanable_files(job.filename, level)
    if config is not None and config.parallel.parallel:
        candidates = _unique([*candidates, *parallel_artifacts(job.output_dir)])
    excluded = set(exceptions)
    return CleanInstruction(
        location=job.output_dir,
        files_to_remove=tuple(
            TargetedFile(name, level) for name in candidates if name not in excluded
        ),
    )


def _extension_files(filename: str, level: int) -> list[str]:
    return [f"{filename}{ext}".strip() for ext in _levels_up_to(COPY_EXTENSIONS, level)]


def copyable_files(job_file: str, level: int, working_directory: str | Path) -> list[str]:
    filename, _ = file_and_ext(job_file)
    declared: list[str] = []
    try:
        declared = find_output_files(read_lines(Path(working_directory) / job_file))
    except (OSError, ValueError) as exc:
        _log.error(
            "[%s] Could not read %s to locate output files; no table files will be "
            "included in copy or delete operations: %s",
            filename,
            job_file,
            exc,
        )
    table = {1: declared}
    return _unique([*_levels_up_to(table, level), *_extension_files(filename, level)])


def files_to_copy(job: JobDescriptor, *mandatory: str) -> CopyInstruction:
    config = job.configuration
    level = config.copy_lvl if config is not None else 0
    entries = [TargetedFile(name, None) for name in _unique(mandatory)]
    already = set(mandatory)
    entries.extend(
        TargetedFile(name, level)
        for name in copyable_files(job.job_file, level, job.output_dir)
        if name not in already
    )
    return CopyInstruction(
        copy_from=job.output_dir,
        copy_to=job.source_dir,
        files_to_copy=tuple(entries),
    )


def does_directory_contain_outputs(path: str | Path, job_file: str) -> bool:
    """True when *path* holds results of an earlier run, or cannot be listed."""
    try:
        names = {entry.name for entry in os.scandir(path)}
    except OSError:
        return True
    outputs = copyable_files(job_file, CONFLICT_CHECK_LEVEL, path)
    return any(name in names for name in outputs)


def new_post_work_instructions(
    job: JobDescriptor,
    cleanup_exclusions: Sequence[str] = (),
    mandatory_copy_files: Sequence[str] = (),
) -> PostWorkInstructions:
    return PostWorkInstructions(
        files_to_copy=files_to_copy(job, *mandatory_copy_files),
        files_to_clean=files_to_clean(job, *cleanup_exclusions),
    )


def apply_post_work(instructions: PostWorkInstructions) -> PostWorkReport:
    """Copy results back, then delete transient files. Missing files are skipped."""
    copy = instructions.files_to_copy
    copied: list[str] = []
    if Path(copy.copy_from).resolve() != Path(copy.copy_to).resolve():
        for target in copy.files_to_copy:
            source = Path(copy.copy_from) / target.file
            if not source.is_file():
                continue
            try:
                shutil.copy2(source, Path(copy.copy_to) / target.file)
            except OSError as exc:
                raise PostWorkError(
                    f"Unable to copy {source} to {copy.copy_to}: {exc}"
                ) from exc
            copied.append(target.file)

    clean = instructions.files_to_clean
    removed: list[str] = []
    for target in clean.files_to_remove:
        victim = Path(clean.location) / target.file
        try:
            if victim.is_dir() and not victim.is_symlink():
                shutil.rmtree(victim)
            elif victim.exists() or victim.is_symlink():
                victim.unlink()
            else:
                continue
        except OSError as exc:
            raise PostWorkError(f"Unable to remove {victim}: {exc}") from exc
        removed.append(target.file)

    _log.debug(
        "post work for %s: copied=%s removed=%s", clean.location, copied, removed
    )
    return PostWorkReport(copied=tuple(copied), removed=tuple(removed))
