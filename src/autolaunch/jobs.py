"""
Test jobs and how they are started as detached OS processes.

Each job is one named test, run by invoking the harness executable with
``-n <job>`` and redirecting its output to a per-job log file.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass, field
from enum import StrEnum, auto
from pathlib import Path
from typing import Any, Protocol

import structlog
import yaml

logger = structlog.get_logger(__name__)


class JobState(StrEnum):
    """Lifecycle of a job as tracked by the launcher."""

    QUEUED = auto()
    """Waiting in the queue."""

    STARTED = auto()
    """A process was spawned for the job."""

    UNKNOWN = auto()
    """The process could not be spawned; its outcome is unknown."""


@dataclass
class Job:
    """A named test job and what the launcher knows about it."""

    name: str
    state: JobState = JobState.QUEUED
    pid: int | None = None
    log_path: Path | None = None
    returncode: int | None = None


class ProcessHandle(Protocol):
    """The part of ``subprocess.Popen`` the launcher relies on."""

    pid: int

    def poll(self) -> int | None: ...

    def wait(self, timeout: float | None = None) -> int: ...


class ProcessStarter(Protocol):
    """Starts one job as an OS process."""

    def start(self, job_id: str) -> ProcessHandle: ...

    def log_path_for(self, job_id: str) -> Path | None: ...


@dataclass(frozen=True)
class JobCommand:
    """
    Shell command template for a single job.

    Renders ``<program> -c <connector> -e <env> -n <job> <pipeline> > <log>``.
    """

    connector: str
    env: str
    program: str = "autobot"
    output_pipeline: str = ""

    @property
    def signature(self) -> tuple[str, ...]:
        """Argument tokens every sibling worker is invoked with."""
        return ("-c", self.connector, "-e", self.env)

    @property
    def static_prefix(self) -> str:
        return shlex.join([self.program, *self.signature])

    def render(self, job_id: str, log_path: Path | str) -> str:
        parts = [self.static_prefix, "-n", shlex.quote(job_id)]
        if self.output_pipeline:
            parts.append(self.output_pipeline)
        parts.extend([">", shlex.quote(str(log_path))])
        return " ".join(parts)


@dataclass
class ShellProcessStarter:
    """
    Spawns each job through the shell in its own session.

    The log directory is created on first use. The spawned process is not
    tied to the launcher's session, so it survives a terminal hangup.
    """

    command: JobCommand
    log_dir: Path | str = "logs/tap_results"
    log_suffix: str = ".t"
    cwd: Path | str | None = None
    _log: Any = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self._log = logger.bind(component="process_starter")

    def log_path_for(self, job_id: str) -> Path:
        return Path(self.log_dir) / f"{job_id}{self.log_suffix}"

    def start(self, job_id: str) -> subprocess.Popen[bytes]:
        log_path = self.log_path_for(job_id)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        run_command = self.command.render(job_id, log_path)
        self._log.debug("Spawning job process", job=job_id, command=run_command)
        return subprocess.Popen(
            run_command,
            shell=True,
            cwd=self.cwd,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )


def load_job_list(path: Path | str) -> list[str]:
    """
    Read job names from a YAML file.

    Accepts either a plain list or a mapping with a ``jobs`` list.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file does not hold a list of job names
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get("jobs")
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of job names")

    jobs = [str(item).strip() for item in data if item is not None]
    jobs = [job for job in jobs if job]
    logger.debug("Loaded job list", path=str(path), count=len(jobs))
    return jobs
