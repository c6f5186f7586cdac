from __future__ import annotations

from pathlib import Path

import pytest

from nmbatch.config import Configuration, ParallelSettings
from nmbatch.models import (
    CleanInstruction,
    CopyInstruction,
    JobDescriptor,
    PostWorkInstructions,
    TargetedFile,
)
from nmbatch.policy import (
    TEMPORARY_FILES,
    apply_post_work,
    cleanable_files,
    copyable_files,
    does_directory_contain_outputs,
    files_to_clean,
    files_to_copy,
    msf_variants,
    new_post_work_instructions,
    parallel_artifacts,
)


def _make_job(tmp_path: Path, **config_fields: object) -> JobDescriptor:
    source_dir = tmp_path / "models"
    output_dir = source_dir / "run001"
    output_dir.mkdir(parents=True)
    (output_dir / "run001.mod").write_text(
        "$PROBLEM test\n$TABLE ID FILE=sdtab001\n", encoding="utf-8"
    )
    return JobDescriptor(
        job_file="run001.mod",
        path=str(source_dir / "run001.mod"),
        filename="run001",
        extension="mod",
        source_dir=str(source_dir),
        output_dir=str(output_dir),
        configuration=Configuration(**config_fields),
    )


def _names(files: tuple[TargetedFile, ...]) -> list[str]:
    return [item.file for item in files]


def test_msf_variants_replace_leading_run() -> None:
    assert msf_variants("run001") == [
        "msfb001",
        "msfb001_ETAS",
        "msfb001_RMAT",
        "msfb001_SMAT",
        "msfb001.msf",
        "msfb001_ETAS.msf",
        "msfb001_RMAT.msf",
        "msfb001_SMAT.msf",
    ]
    assert msf_variants("pk_run")[0] == "pk_run"


def test_level_zero_selects_nothing() -> None:
    assert cleanable_files("run001", 0) == []


def test_level_one_cleans_temporaries_and_msf() -> None:
    names = cleanable_files("run001", 1)

    assert set(TEMPORARY_FILES) <= set(names)
    assert "msfb001_ETAS.msf" in names
    assert cleanable_files("run001", 5) == names


def test_files_to_clean_honors_exceptions(tmp_path: Path) -> None:
    job = _make_job(tmp_path, clean_lvl=1)

    instruction = files_to_clean(job, "FMSG", "msfb001")

    names = _names(instruction.files_to_remove)
    assert instruction.location == job.output_dir
    assert "FMSG" not in names
    assert "msfb001" not in names
    assert "FDATA" in names
    assert all(item.level == 1 for item in instruction.files_to_remove)


def test_files_to_clean_adds_parallel_artifacts(tmp_path: Path) -> None:
    job = _make_job(tmp_path, parallel=ParallelSettings(parallel=True))
    output_dir = Path(job.output_dir)
    (output_dir / "worker1").mkdir()
    (output_dir / "worker12").mkdir()
    (output_dir / "fort.17").write_text("", encoding="utf-8")
    (output_dir / "workers").mkdir()
    (output_dir / "fort.17.bak").write_text("", encoding="utf-8")

    names = _names(files_to_clean(job, "worker12").files_to_remove)

    assert "worker1" in names
    assert "fort.17" in names
    assert "worker12" not in names
    assert "workers" not in names
    assert "fort.17.bak" not in names


def test_parallel_artifacts_of_missing_directory_is_empty(tmp_path: Path) -> None:
    assert parallel_artifacts(tmp_path / "absent") == []


def test_copyable_files_by_level(tmp_path: Path) -> None:
    job = _make_job(tmp_path)

    assert copyable_files(job.job_file, 0, job.output_dir) == []
    level_one = copyable_files(job.job_file, 1, job.output_dir)
    assert level_one[0] == "sdtab001"
    assert "run001.lst" in level_one
    assert "run001.ext" in level_one
    assert "run001.phi" not in level_one
    assert "run001.phi" in copyable_files(job.job_file, 2, job.output_dir)
    assert "run001_ETAS.msf" in copyable_files(job.job_file, 3, job.output_dir)


def test_files_to_copy_lists_mandatory_first(tmp_path: Path) -> None:
    job = _make_job(tmp_path, copy_lvl=1)

    instruction = files_to_copy(job, "run001.sh")

    assert instruction.copy_from == job.output_dir
    assert instruction.copy_to == job.source_dir
    assert instruction.files_to_copy[0] == TargetedFile("run001.sh", None)
    assert all(item.level == 1 for item in instruction.files_to_copy[1:])


def test_files_to_copy_at_level_zero_keeps_mandatory_only(tmp_path: Path) -> None:
    job = _make_job(tmp_path, copy_lvl=0)

    assert _names(files_to_copy(job, "run001.sh").files_to_copy) == ["run001.sh"]


def test_does_directory_contain_outputs(tmp_path: Path) -> None:
    assert does_directory_contain_outputs(tmp_path / "absent", "run001.mod") is True

    (tmp_path / "notes.txt").write_text("", encoding="utf-8")
    assert does_directory_contain_outputs(tmp_path, "run001.mod") is False

    (tmp_path / "run001.lst").write_text("", encoding="utf-8")
    assert does_directory_contain_outputs(tmp_path, "run001.mod") is True


def test_apply_post_work_copies_then_cleans(tmp_path: Path) -> None:
    job = _make_job(tmp_path, clean_lvl=1, copy_lvl=1)
    output_dir = Path(job.output_dir)
    (output_dir / "run001.lst").write_text("report", encoding="utf-8")
    (output_dir / "run001.sh").write_text("#!/bin/bash\n", encoding="utf-8")
    (output_dir / "FDATA").write_text("", encoding="utf-8")
    (output_dir / "temp_dir").mkdir()
    (output_dir / "FMSG").write_text("", encoding="utf-8")

    report = apply_post_work(
        new_post_work_instructions(
            job,
            cleanup_exclusions=("FMSG",),
            mandatory_copy_files=("run001.sh",),
        )
    )

    source_dir = Path(job.source_dir)
    assert (source_dir / "run001.lst").read_text(encoding="utf-8") == "report"
    assert (source_dir / "run001.sh").exists()
    assert not (source_dir / "run001.ext").exists()
    assert set(report.copied) == {"run001.sh", "run001.lst"}
    assert set(report.removed) == {"FDATA", "temp_dir"}
    assert not (output_dir / "FDATA").exists()
    assert not (output_dir / "temp_dir").exists()
    assert (output_dir / "FMSG").exists()


def test_apply_post_work_skips_copy_into_same_directory(tmp_path: Path) -> None:
    (tmp_path / "run001.lst").write_text("report", encoding="utf-8")
    instructions = PostWorkInstructions(
        files_to_copy=CopyInstruction(
            copy_from=str(tmp_path),
            copy_to=str(tmp_path),
            files_to_copy=(TargetedFile("run001.lst", 1),),
        ),
        files_to_clean=CleanInstruction(location=str(tmp_path)),
    )

    report = apply_post_work(instructions)

    assert report.copied == ()
    assert (tmp_path / "run001.lst").read_text(encoding="utf-8") == "report"


@pytest.mark.parametrize("level", [0, 1])
def test_clean_level_controls_removal(tmp_path: Path, level: int) -> None:
    job = _make_job(tmp_path, clean_lvl=level)
    (Path(job.output_dir) / "FDATA").write_text("", encoding="utf-8")

    apply_post_work(new_post_work_instructions(job))

    assert (Path(job.output_dir) / "FDATA").exists() is (level == 0)


def test_copyable_files_tolerates_undecodable_job_file(tmp_path: Path) -> None:
    job = _make_job(tmp_path)
    (Path(job.output_dir) / job.job_file).write_bytes(
        b"$PROBLEM caf\xe9\n$TABLE ID FILE=sdtab001\n"
    )

    names = copyable_files(job.job_file, 1, job.output_dir)

    assert names[0] == "sdtab001"
    assert "run001.lst" in names


def test_copyable_files_with_unreadable_job_file_uses_extensions_only(
    tmp_path: Path,
) -> None:
    working_directory = tmp_path / "run001"
    (working_directory / "run001.mod").mkdir(parents=True)

    names = copyable_files("run001.mod", 1, working_directory)

    assert "sdtab001" not in names
    assert names[0] == "run001.xml"
    assert "run001.lst" in names
