"""Tests for the command-line interface."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
import structlog
from structlog.testing import capture_logs

from autolaunch.census import CensusUnavailableError
from autolaunch.cli import create_parser, main
from autolaunch.launcher import Launcher
from autolaunch.remote import RemoteStatusPoller

SAUCELABS_PROFILE = "hub:\n  user: phu\n  pass: access-key-123\n"


@pytest.fixture(autouse=True)
def quiet_logging() -> Iterator[None]:
    """Keep the CLI from reconfiguring structlog for the whole session."""
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    try:
        with patch("autolaunch.cli.configure_logging"):
            yield
    finally:
        structlog.reset_defaults()


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    monkeypatch.chdir(tmp_path)
    with patch.dict("os.environ", {"AUTOLAUNCH_BURST_GRACE": "0"}):
        yield tmp_path


class TestParser:
    """Tests for argument parsing."""

    def test_run_arguments(self) -> None:
        args = create_parser().parse_args(
            ["run", "a", "b", "-c", "saucelabs:phu:osx_chrome", "-e", "qa", "-p", "4"]
        )

        assert args.jobs == ["a", "b"]
        assert args.connector == "saucelabs:phu:osx_chrome"
        assert args.env == "qa"
        assert args.parallel == 4
        assert args.legacy_slicing is None
        assert args.wait_remote is False
        assert args.log_json is False

    def test_connector_is_required(self) -> None:
        with pytest.raises(SystemExit):
            create_parser().parse_args(["run", "a", "-e", "qa"])


class TestMain:
    """Tests for main()."""

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    @pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")
    def test_run_small_batch(
        self, isolated_env: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test a run starts every job and reports completion."""
        code = main(
            [
                "run", "login", "search",
                "-c", "local", "-e", "qa",
                "--program", "true",
                "--log-dir", "out",
            ]
        )

        assert code == 0
        assert (isolated_env / "out" / "login.t").exists()
        assert (isolated_env / "out" / "search.t").exists()
        assert "All Complete!" in capsys.readouterr().out

    @pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")
    def test_run_with_jobs_file(self, isolated_env: Path) -> None:
        (isolated_env / "jobs.yml").write_text("- checkout\n")

        code = main(
            [
                "run", "--jobs-file", "jobs.yml",
                "-c", "local", "-e", "qa",
                "--program", "true",
                "--log-dir", "out",
            ]
        )

        assert code == 0
        assert (isolated_env / "out" / "checkout.t").exists()

    def test_run_without_jobs(
        self, isolated_env: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["run", "-c", "local", "-e", "qa"]) == 1
        assert "no jobs given" in capsys.readouterr().err

    def test_missing_profile_aborts_before_any_job(
        self, isolated_env: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test remote waiting without a profile fails before jobs start."""
        code = main(
            [
                "run", "login",
                "-c", "saucelabs:phu:win7_ie11", "-e", "qa",
                "--program", "true",
                "--log-dir", "out",
                "--wait-remote",
                "--profiles-dir", "nowhere",
            ]
        )

        assert code == 1
        assert "Cannot load profile 'saucelabs'" in capsys.readouterr().err
        assert not (isolated_env / "out").exists()

    def test_census_command(self, capsys: pytest.CaptureFixture[str]) -> None:
        with patch("autolaunch.cli.ProcessCensus.count", return_value=3):
            code = main(["census", "-c", "local", "-e", "qa"])

        assert code == 0
        assert capsys.readouterr().out.strip() == "3"

    def test_census_unavailable_is_a_setup_error(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with patch(
            "autolaunch.cli.ProcessCensus.count",
            side_effect=CensusUnavailableError("Cannot list running processes: denied"),
        ):
            code = main(["census", "-c", "local", "-e", "qa"])

        assert code == 1
        assert "Cannot list running processes" in capsys.readouterr().err

    def test_interrupt_exits_130(self, capsys: pytest.CaptureFixture[str]) -> None:
        with patch("autolaunch.cli.ProcessCensus.count", side_effect=KeyboardInterrupt):
            code = main(["census", "-c", "local", "-e", "qa"])

        assert code == 130
        assert "jobs already started keep running" in capsys.readouterr().err

    @pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")
    @pytest.mark.parametrize("own_match", [True, False])
    def test_run_counts_self_from_own_command_line(
        self, isolated_env: Path, own_match: bool
    ) -> None:
        """Test the launcher subtracts itself only when its argv matches."""
        with (
            patch(
                "autolaunch.cli.ProcessCensus.matches_current_process",
                return_value=own_match,
            ),
            patch("autolaunch.cli.Launcher", wraps=Launcher) as launcher_cls,
        ):
            code = main(
                ["run", "login", "-c", "local", "-e", "qa", "--program", "true"]
            )

        assert code == 0
        assert launcher_cls.call_args.kwargs["config"].counts_self is own_match


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")
class TestRunWaitRemote:
    """Tests for waiting on the remote service after the local run."""

    ARGS = [
        "run", "login", "search",
        "-c", "saucelabs:phu:linux_chrome", "-e", "qa",
        "--program", "true",
        "--log-dir", "out",
        "--wait-remote",
        "--profiles-dir", "profiles",
    ]

    @pytest.fixture
    def profiles(self, isolated_env: Path) -> Path:
        profiles_dir = isolated_env / "profiles"
        profiles_dir.mkdir()
        (profiles_dir / "saucelabs.yml").write_text(SAUCELABS_PROFILE)
        return profiles_dir

    def test_polls_remote_statuses_after_local_run(
        self, profiles: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if request.url.path.endswith("/jobs"):
                return httpx.Response(200, json=[{"id": "1"}, {"id": "2"}])
            return httpx.Response(200, json={"status": "complete"})

        poller = RemoteStatusPoller(
            "phu",
            "access-key-123",
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            sleep=lambda _: None,
        )

        with patch.object(RemoteStatusPoller, "from_profile", return_value=poller):
            code = main(self.ARGS)

        assert code == 0
        assert calls == [
            "/rest/v1/phu/jobs",
            "/rest/v1/phu/jobs/1",
            "/rest/v1/phu/jobs/2",
        ]
        assert "All Complete!" in capsys.readouterr().out

    def test_polling_failure_is_a_warning(
        self, profiles: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test a failing remote service does not change the exit status."""
        with (
            patch.object(
                RemoteStatusPoller,
                "wait_all_done",
                side_effect=httpx.ConnectError("service down"),
            ),
            capture_logs() as logs,
        ):
            code = main(self.ARGS)

        assert code == 0
        assert "All Complete!" in capsys.readouterr().out
        warnings = [e for e in logs if e["event"] == "Remote status polling failed"]
        assert len(warnings) == 1
        assert warnings[0]["log_level"] == "warning"
        assert "service down" in warnings[0]["error"]
