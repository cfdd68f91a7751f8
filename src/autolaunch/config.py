"""
Configuration models for the parallel job launcher.

Provides typed configuration for:
- Concurrency cap defaults per platform class
- Admission and polling intervals
- Log file placement for launched jobs
- Environment variable support
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Self

import structlog

logger = structlog.get_logger(__name__)

DEVICE_CLOUD_CONNECTOR = "saucelabs"
"""Connector profile name that routes jobs to the remote device cloud."""


@dataclass(frozen=True, slots=True)
class ConnectorSelector:
    """
    Parsed connector selector such as ``saucelabs:phu:win7_ie11``.

    The first segment names the connector profile; every following segment
    is an override key. The third segment, when present, names the platform.
    """

    raw: str
    name: str
    overrides: tuple[str, ...] = ()

    @classmethod
    def parse(cls, selector: str) -> Self:
        """Split a colon-delimited connector selector."""
        parts = selector.strip().split(":")
        if not parts[0]:
            raise ValueError("A connector must be provided")
        return cls(raw=selector.strip(), name=parts[0], overrides=tuple(parts[1:]))

    @property
    def platform(self) -> str:
        """Platform segment of the selector, empty when not given."""
        if len(self.overrides) >= 2:
            return self.overrides[1]
        return ""

    @property
    def on_device_cloud(self) -> bool:
        """Whether jobs execute on the remote device-cloud service."""
        return DEVICE_CLOUD_CONNECTOR in self.raw

    @property
    def runs_on_mac(self) -> bool:
        """Whether the selected platform is the restricted mac class."""
        return "osx" in self.platform


@dataclass(slots=True)
class LauncherConfig:
    """
    Configuration for the parallel job launcher.

    Supports loading from environment variables with sensible defaults.
    """

    concurrency_cap: int | None = None
    """Explicit concurrency cap. Resolved from the platform when None."""

    mac_cap: int = 10
    """Default cap for mac platforms (device-cloud account limit)."""

    default_cap: int = 20
    """Default cap for every other platform."""

    large_batch_threshold: int = 30
    """Burst size above which an extra caution is logged."""

    burst_grace_seconds: float = 20.0
    """Pause after firing a whole small batch at once."""

    admission_interval_seconds: float = 5.0
    """Sleep between process census samples while the cap is full."""

    poll_interval_seconds: float = 20.0
    """Sleep between remote status polls."""

    max_attempts: int = 5
    """Total attempts per remote status call."""

    log_dir: str = "logs/tap_results"
    """Directory receiving one log file per job."""

    log_suffix: str = ".t"
    """Suffix of each per-job log file."""

    legacy_slicing: bool = False
    """Reproduce the historic post-burst slice that skips two queue entries."""

    counts_self: bool = True
    """Whether the launcher process itself matches the census signature."""

    program: str = "autobot"
    """Executable that runs a single named test job."""

    output_pipeline: str = field(default="")
    """Shell pipeline appended after the job arguments."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self) -> None:
        if self.concurrency_cap is not None and self.concurrency_cap < 1:
            raise ValueError("concurrency_cap must be at least 1")
        if self.mac_cap < 1 or self.default_cap < 1:
            raise ValueError("platform caps must be at least 1")
        if self.large_batch_threshold < 1:
            raise ValueError("large_batch_threshold must be at least 1")
        if self.burst_grace_seconds < 0:
            raise ValueError("burst_grace_seconds must be non-negative")
        if self.admission_interval_seconds <= 0:
            raise ValueError("admission_interval_seconds must be positive")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.program:
            raise ValueError("program must not be empty")

    def with_overrides(
        self,
        concurrency_cap: int | None = None,
        log_dir: str | None = None,
        legacy_slicing: bool | None = None,
        program: str | None = None,
        output_pipeline: str | None = None,
        counts_self: bool | None = None,
    ) -> LauncherConfig:
        """
        Create a new config with specified overrides.

        Returns a new instance - does not mutate the original.
        """
        return LauncherConfig(
            concurrency_cap=concurrency_cap or self.concurrency_cap,
            mac_cap=self.mac_cap,
            default_cap=self.default_cap,
            large_batch_threshold=self.large_batch_threshold,
            burst_grace_seconds=self.burst_grace_seconds,
            admission_interval_seconds=self.admission_interval_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            max_attempts=self.max_attempts,
            log_dir=log_dir or self.log_dir,
            log_suffix=self.log_suffix,
            legacy_slicing=(
                self.legacy_slicing if legacy_slicing is None else legacy_slicing
            ),
            counts_self=self.counts_self if counts_self is None else counts_self,
            program=program or self.program,
            output_pipeline=(
                self.output_pipeline if output_pipeline is None else output_pipeline
            ),
        )


def resolve_concurrency_cap(
    explicit: int | None,
    selector: ConnectorSelector | None,
    config: LauncherConfig,
) -> int:
    """
    Pick the concurrency cap for a run.

    An explicit value wins, then the config's own cap, then the platform
    default: ``mac_cap`` for mac platforms and ``default_cap`` otherwise.
    """
    if explicit is not None:
        if explicit < 1:
            raise ValueError("concurrency cap must be at least 1")
        return explicit
    if config.concurrency_cap is not None:
        return config.concurrency_cap
    if selector is not None and selector.runs_on_mac:
        return config.mac_cap
    return config.default_cap


def load_launcher_config(
    env_prefix: str = "AUTOLAUNCH_",
    defaults: LauncherConfig | None = None,
) -> LauncherConfig:
    """
    Load launcher configuration from environment variables.

    Environment variables (all optional):
    - AUTOLAUNCH_PARALLEL: Explicit concurrency cap
    - AUTOLAUNCH_MAC_CAP: Default cap on mac platforms
    - AUTOLAUNCH_DEFAULT_CAP: Default cap elsewhere
    - AUTOLAUNCH_BURST_GRACE: Grace period after a full burst, in seconds
    - AUTOLAUNCH_ADMISSION_INTERVAL: Census sampling interval, in seconds
    - AUTOLAUNCH_POLL_INTERVAL: Remote status polling interval, in seconds
    - AUTOLAUNCH_MAX_ATTEMPTS: Attempts per remote call
    - AUTOLAUNCH_LOG_DIR: Directory for per-job logs
    - AUTOLAUNCH_LEGACY_SLICING: Reproduce the historic post-burst slice
    - AUTOLAUNCH_PROGRAM: Executable that runs one job

    Args:
        env_prefix: Prefix for environment variables
        defaults: Default configuration to use as base

    Returns:
        Loaded and validated LauncherConfig
    """
    base = defaults or LauncherConfig()

    def get_int(key: str, default: int | None) -> int | None:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(
                "Invalid integer value for config",
                key=key,
                value=value,
                using_default=default,
            )
            return default

    def get_float(key: str, default: float) -> float:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning(
                "Invalid float value for config",
                key=key,
                value=value,
                using_default=default,
            )
            return default

    def get_bool(key: str, default: bool) -> bool:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    config = LauncherConfig(
        concurrency_cap=get_int("PARALLEL", base.concurrency_cap),
        mac_cap=get_int("MAC_CAP", base.mac_cap) or base.mac_cap,
        default_cap=get_int("DEFAULT_CAP", base.default_cap) or base.default_cap,
        large_batch_threshold=base.large_batch_threshold,
        burst_grace_seconds=get_float("BURST_GRACE", base.burst_grace_seconds),
        admission_interval_seconds=get_float(
            "ADMISSION_INTERVAL", base.admission_interval_seconds
        ),
        poll_interval_seconds=get_float("POLL_INTERVAL", base.poll_interval_seconds),
        max_attempts=get_int("MAX_ATTEMPTS", base.max_attempts) or base.max_attempts,
        log_dir=os.environ.get(f"{env_prefix}LOG_DIR", base.log_dir),
        log_suffix=base.log_suffix,
        legacy_slicing=get_bool("LEGACY_SLICING", base.legacy_slicing),
        counts_self=base.counts_self,
        program=os.environ.get(f"{env_prefix}PROGRAM", base.program),
        output_pipeline=base.output_pipeline,
    )

    logger.info(
        "Loaded launcher config",
        concurrency_cap=config.concurrency_cap,
        admission_interval=config.admission_interval_seconds,
        log_dir=config.log_dir,
        legacy_slicing=config.legacy_slicing,
    )

    return config
