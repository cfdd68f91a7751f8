"""Pytest fixtures for autolaunch tests."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest


class FakeHandle:
    """Stand-in for a spawned process."""

    def __init__(self, pid: int, returncode: int = 0) -> None:
        self.pid = pid
        self.returncode = returncode
        self.waited = False

    def poll(self) -> int | None:
        return self.returncode if self.waited else None

    def wait(self, timeout: float | None = None) -> int:
        self.waited = True
        return self.returncode


class FakeStarter:
    """Records which jobs were started, in order."""

    def __init__(self, events: list[tuple[str, object]] | None = None) -> None:
        self.started: list[str] = []
        self.handles: list[FakeHandle] = []
        self.events = events if events is not None else []
        self.fail_on: set[str] = set()
        self._pids = itertools.count(1000)

    def start(self, job_id: str) -> FakeHandle:
        if job_id in self.fail_on:
            raise OSError(f"cannot spawn {job_id}")
        handle = FakeHandle(next(self._pids))
        self.started.append(job_id)
        self.handles.append(handle)
        self.events.append(("start", job_id))
        return handle

    def log_path_for(self, job_id: str) -> Path:
        return Path("logs/tap_results") / f"{job_id}.t"


class FakeCensus:
    """Replays a fixed sequence of running-worker samples."""

    def __init__(
        self,
        samples: list[int] | None = None,
        events: list[tuple[str, object]] | None = None,
    ) -> None:
        self.samples = list(samples or [])
        self.events = events if events is not None else []
        self.count_calls = 0
        self.samples_taken: list[int] = []
        self.counts_self_args: list[bool] = []

    def count(self) -> int:
        self.count_calls += 1
        return 1

    def running_workers(self, counts_self: bool = True) -> int:
        self.counts_self_args.append(counts_self)
        value = self.samples.pop(0) if self.samples else 0
        self.samples_taken.append(value)
        self.events.append(("sample", value))
        return value


@pytest.fixture
def events() -> list[tuple[str, object]]:
    """Shared ordered log of census samples and job starts."""
    return []


@pytest.fixture
def starter(events: list[tuple[str, object]]) -> FakeStarter:
    return FakeStarter(events)


@pytest.fixture
def make_census(events: list[tuple[str, object]]) -> Callable[..., FakeCensus]:
    def factory(samples: list[int] | None = None) -> FakeCensus:
        return FakeCensus(samples, events)

    return factory


@pytest.fixture
def sleeps() -> list[float]:
    """Collects requested sleep durations instead of sleeping."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], None]:
    return sleeps.append


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    """Clock returning 10:00:00 then 10:05:00."""
    times = iter(
        [
            datetime(2024, 1, 1, 10, 0, 0, tzinfo=UTC),
            datetime(2024, 1, 1, 10, 5, 0, tzinfo=UTC),
        ]
    )
    return lambda: next(times)
