from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from nmbatch.models import ConfigError

CONFIG_FILENAME = "nmbatch.yaml"
DEFAULT_OUTPUT_DIR = "{name}"
DEFAULT_MPI_EXEC_PATH = "/usr/local/mpich3/bin/mpiexec"
DEFAULT_PARALLEL_NODES = 8
DEFAULT_PARALLEL_TIMEOUT = 2147483647

CONFIG_ALLOWED_KEYS = {
    "output_dir",
    "clean_lvl",
    "copy_lvl",
    "overwrite",
    "git",
    "threads",
    "nm_version",
    "nonmem",
    "parallel",
    # written into working-directory snapshots, ignored on load
    "target",
}
_VERSION_ALLOWED_KEYS = {"home", "executable", "default"}
_PARALLEL_ALLOWED_KEYS = {"parallel", "nodes", "timeout", "mpi_exec_path", "parafile"}


@dataclass(frozen=True)
class VersionEntry:
    home: str
    executable: str
    default: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "home": self.home,
            "executable": self.executable,
            "default": self.default,
        }


@dataclass(frozen=True)
class ParallelSettings:
    parallel: bool = False
    nodes: int = DEFAULT_PARALLEL_NODES
    timeout: int = DEFAULT_PARALLEL_TIMEOUT
    mpi_exec_path: str = DEFAULT_MPI_EXEC_PATH
    parafile: str = ""

    def to_json(self) -> dict[str, Any]:
        return {
            "parallel": self.parallel,
            "nodes": self.nodes,
            "timeout": self.timeout,
            "mpi_exec_path": self.mpi_exec_path,
            "parafile": self.parafile,
        }


@dataclass(frozen=True)
class Configuration:
    versions: dict[str, VersionEntry] = field(default_factory=dict)
    parallel: ParallelSettings = field(default_factory=ParallelSettings)
    clean_lvl: int = 1
    copy_lvl: int = 0
    overwrite: bool = False
    output_dir: str = DEFAULT_OUTPUT_DIR
    git: bool = False
    threads: int = 4
    requested_version: str | None = None
    source_path: str | None = None

    @property
    def default_version(self) -> str | None:
        for tag, entry in self.versions.items():
            if entry.default:
                return tag
        return None

    def to_json(self) -> dict[str, Any]:
        return {
            "output_dir": self.output_dir,
            "clean_lvl": self.clean_lvl,
            "copy_lvl": self.copy_lvl,
            "overwrite": self.overwrite,
            "git": self.git,
            "threads": self.threads,
            "nm_version": self.requested_version,
            "nonmem": {tag: entry.to_json() for tag, entry in self.versions.items()},
            "parallel": self.parallel.to_json(),
        }


def _require_mapping(value: Any, *, label: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a mapping")
    return {str(k): v for k, v in value.items()}


def _reject_unknown(data: Mapping[str, Any], allowed: set[str], *, label: str) -> None:
    unknown = sorted(set(data.keys()) - allowed)
    if unknown:
        raise ConfigError(
            f"{label} has unknown keys: {unknown}. Allowed keys: {sorted(allowed)}"
        )


def _coerce_str(value: Any, *, label: str, default: str = "") -> str:
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string")
    return value.strip()


def _coerce_optional_str(value: Any, *, label: str) -> str | None:
    text = _coerce_str(value, label=label)
    return text or None


def _coerce_int(value: Any, *, label: str, default: int, minimum: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer")
    if value < minimum:
        raise ConfigError(f"{label} must be >= {minimum}")
    return int(value)


def _coerce_bool(value: Any, *, label: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"{label} must be a boolean")
    return value


def _parse_version(tag: str, payload: Any) -> VersionEntry:
    label = f"nonmem.{tag}"
    data = _require_mapping(payload, label=label)
    _reject_unknown(data, _VERSION_ALLOWED_KEYS, label=label)
    home = _coerce_str(data.get("home"), label=f"{label}.home")
    executable = _coerce_str(data.get("executable"), label=f"{label}.executable")
    if not home:
        raise ConfigError(f"{label}.home must be a non-empty string")
    if not executable:
        raise ConfigError(f"{label}.executable must be a non-empty string")
    return VersionEntry(
        home=home,
        executable=executable,
        default=_coerce_bool(data.get("default"), label=f"{label}.default", default=False),
    )


def _parse_parallel(payload: Any) -> ParallelSettings:
    if payload is None:
        return ParallelSettings()
    data = _require_mapping(payload, label="parallel")
    _reject_unknown(data, _PARALLEL_ALLOWED_KEYS, label="parallel")
    return ParallelSettings(
        parallel=_coerce_bool(
            data.get("parallel"), label="parallel.parallel", default=False
        ),
        nodes=_coerce_int(
            data.get("nodes"),
            label="parallel.nodes",
            default=DEFAULT_PARALLEL_NODES,
            minimum=1,
        ),
        timeout=_coerce_int(
            data.get("timeout"),
            label="parallel.timeout",
            default=DEFAULT_PARALLEL_TIMEOUT,
            minimum=1,
        ),
        mpi_exec_path=_coerce_str(
            data.get("mpi_exec_path"),
            label="parallel.mpi_exec_path",
            default=DEFAULT_MPI_EXEC_PATH,
        ),
        parafile=_coerce_str(data.get("parafile"), label="parallel.parafile"),
    )


def parse_configuration(payload: Any, *, source: str = "<memory>") -> Configuration:
    if payload is None:
        payload = {}
    data = _require_mapping(payload, label=f"configuration root ({source})")
    _reject_unknown(data, CONFIG_ALLOWED_KEYS, label=f"configuration ({source})")

    raw_versions = data.get("nonmem") or {}
    versions_raw = _require_mapping(raw_versions, label="nonmem")
    versions: dict[str, VersionEntry] = {}
    for tag, entry in versions_raw.items():
        if not tag.strip():
            raise ConfigError(f"Version tags must be non-empty strings: {source}")
        versions[tag.strip()] = _parse_version(tag.strip(), entry)
    defaults = sorted(tag for tag, entry in versions.items() if entry.default)
    if len(defaults) > 1:
        raise ConfigError(
            f"At most one nonmem version may be marked default; found {defaults} in {source}"
        )

    output_dir = _coerce_str(
        data.get("output_dir"), label="output_dir", default=DEFAULT_OUTPUT_DIR
    )
    return Configuration(
        versions=versions,
        parallel=_parse_parallel(data.get("parallel")),
        clean_lvl=_coerce_int(data.get("clean_lvl"), label="clean_lvl", default=1),
        copy_lvl=_coerce_int(data.get("copy_lvl"), label="copy_lvl", default=0),
        overwrite=_coerce_bool(data.get("overwrite"), label="overwrite", default=False),
        output_dir=output_dir or DEFAULT_OUTPUT_DIR,
        git=_coerce_bool(data.get("git"), label="git", default=False),
        threads=_coerce_int(data.get("threads"), label="threads", default=4, minimum=1),
        requested_version=_coerce_optional_str(
            data.get("nm_version"), label="nm_version"
        ),
        source_path=None if source == "<memory>" else source,
    )


def find_configuration_file(start: str | Path) -> Path | None:
    """Nearest ``nmbatch.yaml`` at or above *start*."""
    directory = Path(start).resolve()
    for candidate_dir in (directory, *directory.parents):
        candidate = candidate_dir / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def load_configuration(path: str | Path) -> Configuration:
    resolved_path = Path(path).expanduser().resolve()
    try:
        text = resolved_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(
            f"A failure occurred accessing the configuration at {resolved_path}: {exc}"
        ) from exc
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(
            f"Unable to parse the configuration file {resolved_path}: {exc}"
        ) from exc
    return parse_configuration(loaded, source=str(resolved_path))


def load_configuration_for(source_dir: str | Path) -> Configuration:
    path = find_configuration_file(source_dir)
    if path is None:
        raise ConfigError(
            f"No {CONFIG_FILENAME} found in {Path(source_dir).resolve()} or any parent directory"
        )
    return load_configuration(path)


_PARALLEL_OVERRIDE_KEYS = {
    "parallel": "parallel",
    "nodes": "nodes",
    "timeout": "timeout",
    "mpi_exec_path": "mpi_exec_path",
    "parafile": "parafile",
}
_TOP_LEVEL_OVERRIDE_KEYS = {
    "clean_lvl",
    "copy_lvl",
    "overwrite",
    "output_dir",
    "git",
    "threads",
    "requested_version",
}


def apply_overrides(
    config: Configuration, overrides: Mapping[str, Any] | None
) -> Configuration:
    """Layer command-line values over a loaded configuration; ``None`` values are skipped."""
    if not overrides:
        return config
    unknown = sorted(
        set(overrides) - _TOP_LEVEL_OVERRIDE_KEYS - set(_PARALLEL_OVERRIDE_KEYS)
    )
    if unknown:
        raise ConfigError(f"Unknown configuration overrides: {unknown}")
    top = {
        key: value
        for key, value in overrides.items()
        if key in _TOP_LEVEL_OVERRIDE_KEYS and value is not None
    }
    parallel = {
        _PARALLEL_OVERRIDE_KEYS[key]: value
        for key, value in overrides.items()
        if key in _PARALLEL_OVERRIDE_KEYS and value is not None
    }
    if parallel:
        top["parallel"] = replace(config.parallel, **parallel)
    return replace(config, **top)


def write_configuration(
    config: Configuration, directory: str | Path, *, target: str | None = None
) -> Path:
    """Snapshot the configuration a job ran with into its working directory."""
    payload = config.to_json()
    if target is not None:
        payload["target"] = target
    path = Path(directory) / CONFIG_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump(payload, sort_keys=True, default_flow_style=False),
        encoding="utf-8",
    )
    return path
