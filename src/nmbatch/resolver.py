from __future__ import annotations

import os
import re
from typing import Iterable, Sequence

from nmbatch._logging import get_logger
from nmbatch.utils import list_files_with_extensions, pad_num

_log = get_logger("resolver")

JOB_FILE_EXTENSIONS = (".mod", ".ctl")
_BRACKET_RE = re.compile(r"(.*)?\[(.*)\](.*)?")
_RANGE_RE = re.compile(r"^\s*(\d+)\s*:\s*(\d+)\s*$")


def expand_name_sequence(arg: str) -> list[str]:
    """Expand ``run[001:003].mod`` into ``run001.mod``, ``run002.mod``, ``run003.mod``.

    Numbers are zero-padded to the width of the lower bound as written.
    """
    match = _BRACKET_RE.fullmatch(arg)
    if match is None:
        raise ValueError(f"'{arg}' does not contain a bracketed sequence")
    prefix, body, suffix = match.group(1) or "", match.group(2), match.group(3) or ""
    bounds = _RANGE_RE.match(body)
    if bounds is None:
        raise ValueError(f"Invalid sequence '[{body}]' in '{arg}', expected [low:high]")
    low_text, high_text = bounds.group(1), bounds.group(2)
    low, high = int(low_text), int(high_text)
    if high < low:
        raise ValueError(f"Invalid sequence '[{body}]' in '{arg}': {high} < {low}")
    width = len(low_text)
    return [f"{prefix}{pad_num(value, width)}{suffix}" for value in range(low, high + 1)]


def _is_directory_argument(arg: str) -> bool:
    if arg == ".":
        return True
    _, ext = os.path.splitext(arg.rstrip("/"))
    return ext == ""


def _resolve_directory(arg: str, extensions: Sequence[str]) -> list[str]:
    if not os.path.isdir(arg):
        _log.error(
            "issue handling %s, if this is a run please add the extension", arg
        )
        return []
    try:
        names = list_files_with_extensions(arg, extensions)
    except OSError as exc:
        _log.error("issue getting job files in dir %s: %s", arg, exc)
        return []
    _log.debug("adding %d job files in directory %s to queue", len(names), arg)
    return [os.path.join(arg, name) for name in names]


def resolve_job_arguments(
    args: Iterable[str], *, extensions: Sequence[str] = JOB_FILE_EXTENSIONS
) -> list[str]:
    """Turn raw command-line arguments into job-file paths.

    A bad argument is logged and dropped; the rest of the list still resolves.
    """
    resolved: list[str] = []
    for arg in args:
        if _is_directory_argument(arg):
            resolved.extend(_resolve_directory(arg, extensions))
            continue
        if _BRACKET_RE.fullmatch(arg):
            _log.info("expanding job pattern: %s", arg)
            try:
                expanded = expand_name_sequence(arg)
            except ValueError as exc:
                _log.error("error expanding name %s: %s", arg, exc)
                continue
            _log.debug("expanded jobs: %s", expanded)
            resolved.extend(expanded)
            continue
        resolved.append(arg)
    return resolved
