from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Any, Sequence

from rich.console import Console
from rich.table import Table

from nmbatch import __version__
from nmbatch._logging import get_logger, setup_logging
from nmbatch.descriptor import build_job_descriptor
from nmbatch.executors import LocalExecutor, SgeExecutor
from nmbatch.executors.base import ExecutionTarget
from nmbatch.manager import JobManager
from nmbatch.models import BatchResult, ConfigError, JobDescriptor
from nmbatch.resolver import resolve_job_arguments
from nmbatch.workdir import suggest_next_run_directory

_cli_log = get_logger("cli")


def _console() -> Console:
    return Console(highlight=False)


def _collect_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "requested_version": args.nm_version,
        "clean_lvl": args.clean_lvl,
        "copy_lvl": args.copy_lvl,
        "overwrite": args.overwrite,
        "git": args.git,
        "threads": args.threads,
        "parallel": args.parallel,
        "nodes": args.nodes,
        "timeout": args.timeout,
        "mpi_exec_path": args.mpi_exec_path,
        "parafile": args.parafile,
    }


def _resolve_worker_count(args: argparse.Namespace, jobs: list[JobDescriptor]) -> int:
    if args.threads is not None:
        return args.threads
    for job in jobs:
        if job.configuration is not None:
            return job.configuration.threads
    return 1


def _render_batch_table(
    payload: dict[str, Any], jobs: list[JobDescriptor], target: str
) -> None:
    console = _console()
    overview = Table(title="Batch Summary", show_header=False)
    overview.add_column("Field", style="bold cyan")
    overview.add_column("Value")
    overview.add_row("Target", target)
    overview.add_row("Jobs", str(len(jobs)))
    overview.add_row("Completed", str(payload["completed"]))
    overview.add_row("Errors", str(payload["errors"]))
    overview.add_row("Cancelled", str(payload["cancelled"]))
    overview.add_row("Elapsed", f"{payload['elapsed_sec']:.1f}s")
    console.print(overview)

    job_table = Table(title="Jobs")
    job_table.add_column("Job", style="bold")
    job_table.add_column("State")
    job_table.add_column("Working Directory")
    states = payload["states"]
    for job in jobs:
        job_table.add_row(
            job.display_name, states.get(job.identity, "-"), job.output_dir or "-"
        )
    if not jobs:
        job_table.add_row("<none>", "-", "-")
    console.print(job_table)

    if payload["failures"]:
        failure_table = Table(title="Failures")
        failure_table.add_column("Job", style="bold red")
        failure_table.add_column("Message")
        for failure in payload["failures"]:
            failure_table.add_row(failure["job"], failure["message"])
        console.print(failure_table)


def _execute_run(args: argparse.Namespace, executor: ExecutionTarget) -> tuple[BatchResult, list[JobDescriptor]]:
    overrides = _collect_overrides(args)
    paths = resolve_job_arguments(args.jobs)
    if not paths:
        _cli_log.warning("No job files were resolved from %s", args.jobs)
    jobs = [build_job_descriptor(path, overrides=overrides) for path in paths]
    manager = JobManager(
        executor,
        max_workers=_resolve_worker_count(args, jobs),
        cleanup_exclusions=args.keep or (),
    )
    return manager.run(jobs), jobs


def _cmd_run(args: argparse.Namespace, executor: ExecutionTarget) -> int:
    result, jobs = _execute_run(args, executor)
    payload = result.to_json()
    if args.format == "json":
        payload["target"] = executor.name
        payload["jobs"] = [job.to_json() for job in jobs]
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        _render_batch_table(payload, jobs, executor.name)
    return 0 if result.ok else 1


def _cmd_run_local(args: argparse.Namespace) -> int:
    return _cmd_run(args, LocalExecutor())


def _cmd_run_sge(args: argparse.Namespace) -> int:
    return _cmd_run(args, SgeExecutor(qsub=args.qsub))


def _cmd_next_dir(args: argparse.Namespace) -> int:
    job = build_job_descriptor(args.job)
    if job.error is not None:
        raise job.error
    suggestion = suggest_next_run_directory(job, padding=args.padding)
    payload = {
        "suggested_name": suggestion.suggested_name,
        "needs_renumbering": suggestion.needs_renumbering,
        "is_first_run": suggestion.is_first_run,
    }
    if args.format == "json":
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    table = Table(title=f"Next Run Directory ({job.job_file})", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")
    for key, value in payload.items():
        table.add_row(key, str(value))
    _console().print(table)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nmbatch", description="Run batches of model-fitting jobs"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_run_args(target: argparse.ArgumentParser) -> None:
        target.add_argument(
            "jobs",
            nargs="+",
            help="Job files, directories, or sequences such as run[001:006].mod",
        )
        selection = target.add_argument_group("Version")
        selection.add_argument(
            "--nm-version",
            default=None,
            help="Version from the configuration list to use",
        )
        policy = target.add_argument_group("Artifacts")
        policy.add_argument("--clean-lvl", type=int, default=None, help="Clean level")
        policy.add_argument("--copy-lvl", type=int, default=None, help="Copy level")
        policy.add_argument(
            "--keep",
            action="append",
            default=None,
            help="File name never removed by cleanup (repeatable)",
        )
        policy.add_argument(
            "--overwrite",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Remove an existing working directory before staging",
        )
        policy.add_argument(
            "--git",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Write a default .gitignore into each working directory",
        )
        parallel = target.add_argument_group("Parallel")
        parallel.add_argument(
            "--parallel",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Run in parallel mode",
        )
        parallel.add_argument("--nodes", type=int, default=None, help="Parallel nodes")
        parallel.add_argument(
            "--timeout",
            type=int,
            default=None,
            help="Seconds to wait for parallel work to complete",
        )
        parallel.add_argument(
            "--mpi-exec-path", default=None, help="Fully qualified path to mpiexec"
        )
        parallel.add_argument(
            "--parafile", default=None, help="User-provided parafile to use verbatim"
        )
        output = target.add_argument_group("Output")
        output.add_argument(
            "--threads", type=int, default=None, help="Number of concurrent jobs"
        )
        output.add_argument("--format", choices=["json", "table"], default="table")

    run_local = sub.add_parser(
        "run-local",
        aliases=["local"],
        help="Run jobs on this machine and wait for them",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  nmbatch run-local run001.mod\n"
            "  nmbatch run-local --clean-lvl 1 run001.mod run002.mod\n"
            "  nmbatch run-local 'run[001:006].mod'\n"
            "  nmbatch run-local .\n"
        ),
    )
    _add_run_args(run_local)
    run_local.set_defaults(handler=_cmd_run_local)

    run_sge = sub.add_parser(
        "run-sge",
        aliases=["sge"],
        help="Submit jobs to a grid engine without waiting",
    )
    _add_run_args(run_sge)
    run_sge.add_argument("--qsub", default="qsub", help="qsub executable")
    run_sge.set_defaults(handler=_cmd_run_sge)

    next_dir = sub.add_parser(
        "next-dir", help="Suggest the next numbered estimation directory for a job"
    )
    next_dir.add_argument("job", help="Job file")
    next_dir.add_argument("--padding", type=int, default=2)
    next_dir.add_argument("--format", choices=["json", "table"], default="table")
    next_dir.set_defaults(handler=_cmd_next_dir)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(raw_argv)
    setup_logging(level=logging.DEBUG if args.debug else None)
    command = str(getattr(args, "command", "unknown"))
    started = time.perf_counter()
    _cli_log.info("cli_command_start command=%s argv=%s", command, " ".join(raw_argv))

    exit_code = 1
    try:
        exit_code = int(args.handler(args))
    except ConfigError as exc:
        _cli_log.error("cli_command_error command=%s kind=config error=%s", command, exc)
        print(f"[config error] {exc}", file=sys.stderr)
        exit_code = 2
    except KeyboardInterrupt:
        _cli_log.error("cli_command_error command=%s kind=interrupted", command)
        print("\n[interrupted]", file=sys.stderr)
        exit_code = 130
    except RuntimeError as exc:
        _cli_log.error("cli_command_error command=%s kind=runtime error=%s", command, exc)
        print(f"[runtime error] {exc}", file=sys.stderr)
        exit_code = 1
    except (OSError, ValueError) as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=%s error=%s",
            command,
            type(exc).__name__,
            exc,
        )
        print(f"[error] {type(exc).__name__}: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        _cli_log.info(
            "cli_command_end command=%s exit_code=%s duration_sec=%.3f",
            command,
            exit_code,
            time.perf_counter() - started,
        )

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
