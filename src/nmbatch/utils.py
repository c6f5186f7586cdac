from __future__ import annotations

import datetime as dt
import hashlib
import os
from pathlib import Path
from typing import Iterable


def utc_now_iso() -> str:
    return (
        dt.datetime.now(dt.timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def file_and_ext(name: str) -> tuple[str, str]:
    """Split on the first dot: ``run001.mod`` -> ``("run001", "mod")``."""
    base = os.path.basename(name)
    head, sep, tail = base.partition(".")
    if not sep:
        return base, ""
    return head, tail


def pad_num(value: int, padding: int) -> str:
    return f"{value:0{max(padding, 0)}d}"


# Job files come from many editors; undecodable bytes are carried as
# surrogates so a staged copy keeps the source bytes.
_TEXT_ERRORS = "surrogateescape"


def read_raw_lines(path: str | Path) -> list[str]:
    """Lines of *path* with their original line endings kept."""
    with Path(path).open(
        "r", encoding="utf-8", errors=_TEXT_ERRORS, newline=""
    ) as handle:
        return list(handle)


def read_lines(path: str | Path) -> list[str]:
    return [line.rstrip("\r\n") for line in read_raw_lines(path)]


def write_raw_lines(
    lines: Iterable[str], path: str | Path, *, mode: int | None = None
) -> None:
    """Write *lines* exactly as given; the inverse of :func:`read_raw_lines`."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8", errors=_TEXT_ERRORS, newline="") as handle:
        handle.write("".join(lines))
    if mode is not None:
        target.chmod(mode)


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(path)
    except Exception:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def md5_file(path: str | Path, *, chunk_size: int = 1 << 20) -> str:
    digest = hashlib.md5()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def list_files_with_extensions(
    directory: str | Path, extensions: Iterable[str]
) -> list[str]:
    """Names of regular files directly inside *directory*, sorted."""
    wanted = tuple(extensions)
    names = [
        entry.name
        for entry in os.scandir(directory)
        if entry.is_file() and entry.name.endswith(wanted)
    ]
    return sorted(names)
