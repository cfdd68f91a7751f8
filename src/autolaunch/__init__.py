"""
autolaunch - parallel launcher for browser test jobs.

Runs named test jobs as independent processes under a concurrency cap,
admitting new jobs as a process census shows free slots, and optionally
waits on a device-cloud service until its recent jobs finish.
"""

__version__ = "1.0.0"

from autolaunch.census import CensusUnavailableError, ProcessCensus
from autolaunch.config import (
    ConnectorSelector,
    LauncherConfig,
    load_launcher_config,
    resolve_concurrency_cap,
)
from autolaunch.jobs import Job, JobCommand, JobState, ShellProcessStarter, load_job_list
from autolaunch.launcher import Launcher, LaunchSummary, wait_for_pids
from autolaunch.profile import (
    ConnectorProfile,
    ProfileError,
    ProfileNotFoundError,
    load_connector_profile,
)
from autolaunch.remote import (
    RemoteParseError,
    RemoteSettings,
    RemoteStatus,
    RemoteStatusError,
    RemoteStatusPoller,
)

__all__ = [
    # Launching
    "Job",
    "JobCommand",
    "JobState",
    "LaunchSummary",
    "Launcher",
    "ShellProcessStarter",
    "load_job_list",
    "wait_for_pids",
    # Census
    "CensusUnavailableError",
    "ProcessCensus",
    # Configuration
    "ConnectorProfile",
    "ConnectorSelector",
    "LauncherConfig",
    "ProfileError",
    "ProfileNotFoundError",
    "load_connector_profile",
    "load_launcher_config",
    "resolve_concurrency_cap",
    # Remote status
    "RemoteParseError",
    "RemoteSettings",
    "RemoteStatus",
    "RemoteStatusError",
    "RemoteStatusPoller",
    "__version__",
]
