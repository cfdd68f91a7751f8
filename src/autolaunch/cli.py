"""
Command-line interface for the parallel job launcher.

Provides commands for running a batch of test jobs under a concurrency cap
and for sampling the number of running sibling workers.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import structlog

from autolaunch import __version__
from autolaunch.census import CensusUnavailableError, ProcessCensus
from autolaunch.config import ConnectorSelector, LauncherConfig, load_launcher_config
from autolaunch.jobs import JobCommand, ShellProcessStarter, load_job_list
from autolaunch.launcher import Launcher
from autolaunch.profile import DEFAULT_PROFILES_DIR, ProfileError, load_connector_profile
from autolaunch.remote import RemoteSettings, RemoteStatusPoller

logger = structlog.get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Run the CLI and return the process exit status."""
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose, json_logs=args.log_json)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except KeyboardInterrupt:
        # Jobs run in their own sessions and outlive the launcher.
        print("\nInterrupted; jobs already started keep running", file=sys.stderr)
        return 130
    except (ProfileError, CensusUnavailableError) as e:
        logger.error("Launch setup failed", error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error("Command failed", command=args.command, error=str(e))
        if args.verbose:
            raise
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="autolaunch",
        description="Run browser test jobs as parallel processes under a concurrency cap",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"autolaunch {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Emit logs as JSON lines instead of console text",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run test jobs in parallel")
    run_parser.add_argument(
        "jobs",
        nargs="*",
        help="Names of the test jobs to run",
    )
    run_parser.add_argument(
        "--jobs-file",
        help="YAML file listing job names",
    )
    _add_worker_arguments(run_parser)
    run_parser.add_argument(
        "--parallel", "-p",
        type=int,
        default=None,
        help="Concurrency cap (defaults to 10 on osx platforms, 20 elsewhere)",
    )
    run_parser.add_argument(
        "--pipeline",
        default=None,
        help="Shell pipeline each job's output is piped through",
    )
    run_parser.add_argument(
        "--log-dir",
        default=None,
        help="Directory for per-job log files",
    )
    run_parser.add_argument(
        "--legacy-slicing",
        action="store_true",
        default=None,
        help="Reproduce the historic post-burst slice (skips two jobs)",
    )
    run_parser.add_argument(
        "--wait-remote",
        action="store_true",
        help="After local processes exit, poll the device cloud until no job is in progress",
    )
    run_parser.add_argument(
        "--profiles-dir",
        default=str(DEFAULT_PROFILES_DIR),
        help="Directory holding connector profiles",
    )
    run_parser.set_defaults(func=cmd_run)

    census_parser = subparsers.add_parser(
        "census", help="Count running sibling worker processes"
    )
    _add_worker_arguments(census_parser)
    census_parser.set_defaults(func=cmd_census)

    return parser


def _add_worker_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--connector", "-c",
        required=True,
        help="Connector selector, e.g. saucelabs:phu:osx_chrome",
    )
    parser.add_argument(
        "--env", "-e",
        required=True,
        help="Environment profile the jobs run against",
    )
    parser.add_argument(
        "--program",
        default=None,
        help="Executable that runs a single job",
    )


def configure_logging(verbose: bool, json_logs: bool = False) -> None:
    """
    Configure structlog on top of stdlib logging.

    Logs go to stderr so command output on stdout stays machine readable.
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso" if json_logs else "%H:%M:%S"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        stream=sys.stderr,
        format="%(message)s",
    )


def _job_command(args: argparse.Namespace, config: LauncherConfig) -> JobCommand:
    return JobCommand(
        connector=args.connector,
        env=args.env,
        program=args.program or config.program,
        output_pipeline=config.output_pipeline,
    )


def cmd_run(args: argparse.Namespace) -> int:
    """Run test jobs in parallel."""
    from dotenv import load_dotenv

    load_dotenv()

    jobs: list[str] = list(args.jobs)
    if args.jobs_file:
        jobs.extend(load_job_list(args.jobs_file))
    if not jobs:
        print("Error: no jobs given", file=sys.stderr)
        return 1

    selector = ConnectorSelector.parse(args.connector)
    config = load_launcher_config().with_overrides(
        log_dir=args.log_dir,
        legacy_slicing=args.legacy_slicing,
        program=args.program,
        output_pipeline=args.pipeline,
    )

    poller: RemoteStatusPoller | None = None
    if args.wait_remote:
        # Load credentials before any job starts.
        profile = load_connector_profile(selector, args.profiles_dir)
        poller = RemoteStatusPoller.from_profile(
            profile,
            RemoteSettings(),
            max_attempts=config.max_attempts,
            poll_interval_seconds=config.poll_interval_seconds,
        )

    command = _job_command(args, config)
    census = ProcessCensus(command.program, command.signature)
    config = config.with_overrides(counts_self=census.matches_current_process())
    launcher = Launcher(
        jobs,
        starter=ShellProcessStarter(command, config.log_dir, config.log_suffix),
        census=census,
        concurrency_cap=args.parallel,
        selector=selector,
        config=config,
    )

    try:
        summary = launcher.run()
        if poller is not None:
            try:
                poller.wait_all_done(len(jobs))
            except Exception as e:
                logger.warning("Remote status polling failed", error=str(e))
    finally:
        if poller is not None:
            poller.close()

    print(
        f"\nAll Complete! Started at {summary.started_at:%Y-%m-%d %H:%M:%S} "
        f"and finished at {summary.finished_at:%Y-%m-%d %H:%M:%S}"
    )
    if summary.unscheduled:
        print(f"Not started: {', '.join(job.name for job in summary.unscheduled)}")
    return 0


def cmd_census(args: argparse.Namespace) -> int:
    """Print the number of running sibling workers."""
    config = load_launcher_config()
    command = _job_command(args, config)
    census = ProcessCensus(command.program, command.signature)
    print(census.count())
    return 0


if __name__ == "__main__":
    sys.exit(main())
