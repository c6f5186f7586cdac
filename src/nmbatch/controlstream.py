"""Small readers for the control-stream records the orchestrator cares about.

Only three facts are extracted from a job file: the dataset path on the
``$DATA`` record, the same path shifted one directory deeper for a staged
copy, and the ``FILE=`` outputs declared on ``$TABLE`` records.
"""

from __future__ import annotations

import re
from typing import Iterable

_RECORD_RE = re.compile(r"^\s*\$(\w+)")
_DATA_RE = re.compile(
    r"^(?P<lead>\s*\$DATA\w*\s+)(?P<quote>['\"]?)(?P<path>[^\s'\"]+)(?P=quote)",
    re.IGNORECASE,
)
_FILE_RE = re.compile(r"\bFILE\s*=\s*(['\"]?)([^\s'\"]+)\1", re.IGNORECASE)


def _strip_comment(line: str) -> str:
    return line.split(";", 1)[0]


def find_data_path(lines: Iterable[str]) -> str | None:
    for line in lines:
        match = _DATA_RE.match(_strip_comment(line))
        if match:
            return match.group("path")
    return None


def add_path_level_to_data(line: str) -> str:
    """Rewrite a ``$DATA`` line so a relative dataset path resolves one level deeper."""
    match = _DATA_RE.match(line)
    if match is None:
        return line
    path = match.group("path")
    if path.startswith(("/", "~")) or re.match(r"^[A-Za-z]:[\\/]", path):
        return line
    if path.startswith("./"):
        path = path[2:]
    quote = match.group("quote")
    rewritten = f"{match.group('lead')}{quote}../{path}{quote}"
    return rewritten + line[match.end():]


def find_output_files(lines: Iterable[str]) -> list[str]:
    """Files named by ``FILE=`` on ``$TABLE`` records, in declaration order."""
    outputs: list[str] = []
    in_table = False
    for raw in lines:
        line = _strip_comment(raw)
        record = _RECORD_RE.match(line)
        if record:
            in_table = record.group(1).upper().startswith("TAB")
        if not in_table:
            continue
        for match in _FILE_RE.finditer(line):
            name = match.group(2)
            if name not in outputs:
                outputs.append(name)
    return outputs
