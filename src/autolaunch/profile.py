"""
Connector profile loading.

A connector profile is a YAML file named after the first segment of a
connector selector. Only the remote hub block matters to the launcher: it
carries the device-cloud credentials used by the remote status poller.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from autolaunch.config import ConnectorSelector

logger = structlog.get_logger(__name__)

DEFAULT_PROFILES_DIR = Path("config/autolaunch/connectors")


class ProfileError(Exception):
    """Base exception for connector profile errors."""


class ProfileNotFoundError(ProfileError):
    """Raised when the connector profile file does not exist."""


class HubConfig(BaseModel):
    """Remote WebDriver hub settings."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    url: str | None = None
    user: str | None = None
    access_key: SecretStr | None = Field(default=None, alias="pass")


class ConnectorProfile(BaseModel):
    """The subset of a connector profile the launcher reads."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    driver: str | None = None
    hub: HubConfig | None = None

    def credentials(self) -> tuple[str, str]:
        """
        Return the ``(user, access_key)`` pair for the remote service.

        Raises:
            ProfileError: If the hub block lacks either value
        """
        if (
            self.hub is None
            or not self.hub.user
            or self.hub.access_key is None
            or not self.hub.access_key.get_secret_value()
        ):
            raise ProfileError(
                f"Connector profile {self.name!r} has no hub user/pass credentials"
            )
        return self.hub.user, self.hub.access_key.get_secret_value()


def load_connector_profile(
    selector: ConnectorSelector | str,
    profiles_dir: Path | str = DEFAULT_PROFILES_DIR,
) -> ConnectorProfile:
    """
    Load the connector profile named by a selector.

    Args:
        selector: Connector selector, e.g. ``saucelabs:phu:osx_chrome``
        profiles_dir: Directory holding ``<name>.yml`` profiles

    Returns:
        Validated ConnectorProfile

    Raises:
        ProfileNotFoundError: If ``<profiles_dir>/<name>.yml`` does not exist
        ProfileError: If the file is not a valid profile
    """
    if isinstance(selector, str):
        selector = ConnectorSelector.parse(selector)

    path = Path(profiles_dir) / f"{selector.name}.yml"
    if not path.exists():
        raise ProfileNotFoundError(
            f"Cannot load profile {selector.name!r} because {str(path)!r} does not exist"
        )

    with path.open() as f:
        try:
            data: Any = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ProfileError(f"Profile {str(path)!r} is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ProfileError(f"Profile {str(path)!r} must contain a mapping")

    try:
        profile = ConnectorProfile.model_validate({**data, "name": selector.name})
    except ValidationError as e:
        raise ProfileError(f"Profile {str(path)!r} is invalid: {e}") from e

    logger.debug("Loaded connector profile", profile=selector.name, path=str(path))
    return profile
