"""
Remote job status polling for the device-cloud execution service.

Provides:
- Blocking httpx client with HTTP basic auth
- Bounded immediate retry per request
- Strict pydantic parsing of job records, skipping malformed ones
- A polling wait until no recent job is still in progress

Local process exit is the primary completion signal. Polling the remote
service is a slower fallback kept for runs that need the service's own view.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from autolaunch.profile import ConnectorProfile

logger = structlog.get_logger(__name__)


class RemoteStatusError(Exception):
    """Base exception for remote status errors."""


class RemoteParseError(RemoteStatusError):
    """Raised when a response does not match the expected schema."""


class RemoteStatus(StrEnum):
    """Status of one job on the remote service."""

    COMPLETE = "complete"
    ERROR = "error"
    IN_PROGRESS = "in progress"
    UNKNOWN = "unknown"


class RemoteJobRef(BaseModel):
    """Entry of the recent jobs listing. Numeric ids are kept as strings."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str = Field(min_length=1)


class RemoteJobRecord(BaseModel):
    """Status record of a single remote job."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str | None = None
    status: RemoteStatus

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, v: Any) -> RemoteStatus:
        """Map unrecognized status strings to UNKNOWN; reject non-strings."""
        if not isinstance(v, str):
            raise ValueError("status must be a string")
        try:
            return RemoteStatus(v.strip().lower())
        except ValueError:
            return RemoteStatus.UNKNOWN


_JOB_LIST = TypeAdapter(list[RemoteJobRef])


class RemoteSettings(BaseSettings):
    """
    Environment-based remote service settings.

    Loads configuration from environment variables with AUTOLAUNCH_REMOTE_ prefix.
    Credentials left empty here are taken from the connector profile.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOLAUNCH_REMOTE_",
        case_sensitive=False,
        extra="ignore",
    )

    base_url: str = "https://saucelabs.com/rest/v1"
    username: str = ""
    access_key: SecretStr = SecretStr("")
    timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base_url is valid and strip trailing slashes."""
        v = v.rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v


class RemoteStatusPoller:
    """
    Queries the device-cloud service for the status of recent jobs.

    Usage:
        with RemoteStatusPoller("user", "key") as poller:
            poller.wait_all_done(total_jobs=12)
    """

    def __init__(
        self,
        username: str,
        access_key: str,
        base_url: str = "https://saucelabs.com/rest/v1",
        max_attempts: int = 5,
        poll_interval_seconds: float = 20.0,
        timeout_seconds: float = 30.0,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._username = username
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max_attempts
        self._poll_interval = poll_interval_seconds
        self._sleep = sleep
        self._log = logger.bind(component="remote_status_poller", user=username)

        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            auth=httpx.BasicAuth(username, access_key),
            timeout=httpx.Timeout(timeout_seconds),
        )

    @classmethod
    def from_profile(
        cls,
        profile: ConnectorProfile,
        settings: RemoteSettings | None = None,
        **kwargs: Any,
    ) -> RemoteStatusPoller:
        """Build a poller from connector profile credentials and settings."""
        settings = settings or RemoteSettings()
        access_key = settings.access_key.get_secret_value()
        if settings.username and access_key:
            username = settings.username
        else:
            username, access_key = profile.credentials()
        return cls(
            username,
            access_key,
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
            **kwargs,
        )

    def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> RemoteStatusPoller:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _get_with_retry(self, url: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET a JSON document, retrying immediately on failure.

        Every failed attempt is logged. The last attempt's error propagates.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._client.get(url, params=params)
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, ValueError) as e:
                self._log.warning(
                    "Remote request failed",
                    url=url,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=str(e),
                )
                if attempt >= self._max_attempts:
                    raise

    def recent_job_ids(self, limit: int) -> list[str]:
        """
        Ids of the ``limit`` most recently created remote jobs.

        Raises:
            httpx.HTTPError: If the listing fails after every attempt
            RemoteParseError: If the listing is not a list of job records
        """
        data = self._get_with_retry(
            f"{self._base_url}/{self._username}/jobs",
            params={"limit": limit},
        )
        try:
            refs = _JOB_LIST.validate_python(data)
        except ValidationError as e:
            raise RemoteParseError(f"Malformed job listing: {e}") from e
        return [ref.id for ref in refs[:limit]]

    def fetch_status(self, job_id: str) -> RemoteStatus:
        """
        Status of one remote job.

        Raises:
            httpx.HTTPError: If every attempt fails
            RemoteParseError: If the record has no usable status
        """
        data = self._get_with_retry(f"{self._base_url}/{self._username}/jobs/{job_id}")
        try:
            record = RemoteJobRecord.model_validate(data)
        except ValidationError as e:
            raise RemoteParseError(f"Malformed status for job {job_id}: {e}") from e
        return record.status

    def recent_statuses(self, limit: int) -> list[RemoteStatus]:
        """
        Statuses of the ``limit`` most recent jobs.

        A job whose status cannot be fetched or parsed is logged and left
        out of the result; the rest of the batch continues.
        """
        statuses: list[RemoteStatus] = []
        for job_id in self.recent_job_ids(limit):
            try:
                statuses.append(self.fetch_status(job_id))
            except (httpx.HTTPError, ValueError) as e:
                self._log.warning("Skipping remote job status", job_id=job_id, error=str(e))
            except RemoteParseError as e:
                self._log.warning("Skipping malformed remote job status", job_id=job_id, error=str(e))
        return statuses

    def wait_all_done(self, total_jobs: int) -> list[RemoteStatus]:
        """
        Poll until none of the ``total_jobs`` most recent jobs is in progress.

        There is no deadline: this loops for as long as the service keeps
        reporting a job in progress.

        .. deprecated::
            Prefer waiting on the local processes.
        """
        statuses = self.recent_statuses(total_jobs)
        while RemoteStatus.IN_PROGRESS in statuses:
            self._log.info(
                "There are tests still running, waiting...",
                in_progress=statuses.count(RemoteStatus.IN_PROGRESS),
                wait_seconds=self._poll_interval,
            )
            self._sleep(self._poll_interval)
            statuses = self.recent_statuses(total_jobs)
        self._log.info("Remote jobs finished", total=len(statuses))
        return statuses
