"""
Bounded-concurrency launcher for named test jobs.

Starts each job as its own OS process and keeps at most ``concurrency_cap``
of them running at the moment of every admission decision:
- Small batches (no more jobs than the cap) start all at once
- Larger batches start one full burst, then admit more jobs whenever a
  process census sample shows free slots
- The run ends after every spawned process has exited

Admission is sample-then-act. Another harness invocation using the same
signature can start processes between a sample and the spawn that follows,
so the effective cap can be exceeded; there is no atomic admission.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

import psutil
import structlog

from autolaunch.census import ProcessCensus
from autolaunch.config import ConnectorSelector, LauncherConfig, resolve_concurrency_cap
from autolaunch.jobs import Job, JobState, ProcessHandle, ProcessStarter

logger = structlog.get_logger(__name__)


@dataclass
class LaunchSummary:
    """Outcome of one launcher run."""

    started_at: datetime
    """When the run started."""

    finished_at: datetime | None = None
    """When the last spawned process exited."""

    concurrency_cap: int = 0
    """Cap the run was admitted under."""

    jobs: list[Job] = field(default_factory=list)
    """Every job, in queue order."""

    @property
    def started(self) -> list[Job]:
        return [job for job in self.jobs if job.state == JobState.STARTED]

    @property
    def unscheduled(self) -> list[Job]:
        """Jobs that never left the queue."""
        return [job for job in self.jobs if job.state == JobState.QUEUED]

    @property
    def returncodes(self) -> dict[str, int | None]:
        return {job.name: job.returncode for job in self.started}

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


class Launcher:
    """
    Runs a queue of jobs as detached processes under a concurrency cap.

    One instance owns the state of one run: the queue, the job records and
    the process handles.

    Usage:
        starter = ShellProcessStarter(command)
        census = ProcessCensus(command.program, command.signature)
        summary = Launcher(jobs, starter, census, concurrency_cap=4).run()
    """

    def __init__(
        self,
        jobs: Sequence[str],
        starter: ProcessStarter,
        census: ProcessCensus,
        concurrency_cap: int | None = None,
        selector: ConnectorSelector | None = None,
        config: LauncherConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """
        Initialize the launcher.

        Args:
            jobs: Job names, in the order they should start
            starter: Spawns one process per job
            census: Counts running sibling processes
            concurrency_cap: Explicit cap; resolved from the platform if None
            selector: Connector selector used to pick the platform default cap
            config: Launcher configuration
            sleep: Blocking sleep used between census samples
            clock: Source of wall-clock timestamps for the summary
        """
        self._config = config or LauncherConfig()
        self._cap = resolve_concurrency_cap(concurrency_cap, selector, self._config)
        self._starter = starter
        self._census = census
        self._sleep = sleep
        self._clock = clock
        self._jobs = [Job(name=name) for name in jobs]
        self._handles: list[tuple[Job, ProcessHandle]] = []
        self._log = logger.bind(component="launcher", concurrency_cap=self._cap)

    @property
    def concurrency_cap(self) -> int:
        return self._cap

    @property
    def jobs(self) -> list[Job]:
        return list(self._jobs)

    def run(self) -> LaunchSummary:
        """
        Start every job and block until all spawned processes exit.

        Raises:
            CensusUnavailableError: If admission control is needed but the
                process table cannot be listed. Raised before any job starts.
        """
        summary = LaunchSummary(
            started_at=self._clock(),
            concurrency_cap=self._cap,
            jobs=self._jobs,
        )
        size = len(self._jobs)

        if size <= self._cap:
            self._start_set(self._jobs)
            self._log.warning(
                f"CAUTION! All {size} tests are starting at the same time!",
                jobs=size,
            )
            if size > self._config.large_batch_threshold:
                self._log.warning(
                    "Burst is larger than the machine can comfortably run",
                    jobs=size,
                    threshold=self._config.large_batch_threshold,
                )
            self._sleep(self._config.burst_grace_seconds)
        else:
            # Fail before the burst if the census cannot work at all.
            self._census.count()

            self._start_set(self._jobs[: self._cap])
            self.keep_running_full(self._remainder(self._jobs))

        self._wait_all()

        summary.finished_at = self._clock()
        unscheduled = [job.name for job in summary.unscheduled]
        if unscheduled:
            self._log.warning("Jobs were never started", jobs=unscheduled)
        self._log.info(
            "All Complete!",
            started_at=summary.started_at.isoformat(),
            finished_at=summary.finished_at.isoformat(),
            started=len(summary.started),
            duration_seconds=summary.duration_seconds,
        )
        return summary

    def _remainder(self, jobs: list[Job]) -> list[Job]:
        """Jobs left after the first burst."""
        if self._config.legacy_slicing:
            # Historic slice: skips the job right after the burst and the last job.
            return jobs[self._cap + 1 : len(jobs) - 1]
        return jobs[self._cap :]

    def keep_running_full(self, remaining: Iterable[Job | str]) -> list[Job]:
        """
        Admit queued jobs whenever the census shows free slots.

        Each admission step starts at most ``cap - running`` jobs from the
        front of the queue. Names not yet known to the launcher are added to
        its job list. Returns the jobs started by this call.
        """
        queue = deque(self._as_job(item) for item in remaining)
        started: list[Job] = []
        self._log.info("Keeping the pool full", queued=len(queue))

        while queue:
            running = self._census.running_workers(self._config.counts_self)
            while running >= self._cap:
                self._log.info(
                    "Concurrency cap reached, waiting",
                    running=running,
                    wait_seconds=self._config.admission_interval_seconds,
                )
                self._sleep(self._config.admission_interval_seconds)
                running = self._census.running_workers(self._config.counts_self)

            free_slots = self._cap - running
            batch = [queue.popleft() for _ in range(min(free_slots, len(queue)))]
            self._log.info("Got some space", free_slots=free_slots, starting=len(batch))
            started.extend(self._start_set(batch))

        return started

    def _as_job(self, item: Job | str) -> Job:
        if isinstance(item, Job):
            return item
        job = Job(name=item)
        self._jobs.append(job)
        return job

    def _start_set(self, jobs: Iterable[Job]) -> list[Job]:
        started: list[Job] = []
        for job in jobs:
            try:
                handle = self._starter.start(job.name)
            except OSError as e:
                job.state = JobState.UNKNOWN
                self._log.error("Could not start job", job=job.name, error=str(e))
                continue

            job.state = JobState.STARTED
            job.pid = handle.pid
            job.log_path = self._starter.log_path_for(job.name)
            self._handles.append((job, handle))
            started.append(job)
            self._log.info("Running job", job=job.name, pid=handle.pid)
        return started

    def _wait_all(self) -> None:
        for job, handle in self._handles:
            job.returncode = handle.wait()


def wait_for_pids(
    pids: Iterable[int],
    interval_seconds: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Poll until at most one of ``pids`` is still running.

    .. deprecated::
        Waiting on the process handles, as ``Launcher.run`` does, is cheaper
        and exact. Kept for callers that only have pids.
    """
    running = list(pids)
    while len(running) > 1:
        sleep(interval_seconds)
        logger.info("Waiting on processes", pids=running)
        for pid in list(running):
            if not psutil.pid_exists(pid):
                logger.info("Process is not running, removing it from pool", pid=pid)
                running.remove(pid)
