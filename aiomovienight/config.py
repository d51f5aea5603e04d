"""Session descriptor loading."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import orjson
from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField
from mashumaro.mixins.orjson import DataClassORJSONMixin

from aiomovienight.errors import SessionConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("session.json")
REQUIRED_FORMAT_HINT = '{"videoFormats": {"mp4": "url"}, "slug": "name", "startTime": 0}'


@dataclass
class SessionConfig(DataClassORJSONMixin):
    """Session descriptor read once at startup."""

    slug: str
    """Name of the session, also used as the advertised service name."""
    video_formats: dict[str, str] | None = field(
        default=None, metadata=field_options(alias="videoFormats")
    )
    """Stream locators keyed by container format."""
    video_url: str | None = field(default=None, metadata=field_options(alias="videoUrl"))
    """Single stream locator (legacy descriptors)."""
    start_time: float = field(default=0.0, metadata=field_options(alias="startTime"))
    """Canonical position before the leader first reports, in seconds."""
    admin_password: str | None = field(
        default=None, metadata=field_options(alias="adminPassword")
    )
    """Password required to take the leader slot, if any."""

    class Config(BaseConfig):
        """Config for parsing the descriptor."""

        serialize_by_alias = True
        omit_none = True

    @property
    def sources(self) -> dict[str, str]:
        """Return stream locators keyed by format, normalising ``video_url``."""
        if self.video_formats:
            return dict(self.video_formats)
        if self.video_url:
            extension = self.video_url.rsplit(".", 1)[-1]
            return {extension: self.video_url}
        return {}


def load_session_config(path: Path | str = DEFAULT_CONFIG_PATH) -> SessionConfig:
    """Read and validate the descriptor at ``path``.

    Raises SessionConfigError when the file is missing, is not JSON, or has
    no stream locator.
    """
    path = Path(path)
    try:
        raw = orjson.loads(path.read_bytes())
    except OSError as err:
        raise SessionConfigError(f"Cannot read {path}: {err}") from err
    except orjson.JSONDecodeError as err:
        raise SessionConfigError(f"{path} is not valid JSON: {err}") from err

    if not isinstance(raw, dict):
        raise SessionConfigError(f"{path} must contain a JSON object")
    try:
        config = SessionConfig.from_dict(raw)
    except (MissingField, ValueError, TypeError) as err:
        raise SessionConfigError(f"Invalid session descriptor {path}: {err}") from err

    if not config.sources:
        raise SessionConfigError(
            "No video configuration found (need videoFormats or videoUrl)"
        )
    if config.video_formats:
        logger.info(
            "Loaded session: %s with formats: %s", config.slug, ", ".join(config.video_formats)
        )
    else:
        logger.info("Loaded session: %s with single video: %s", config.slug, config.video_url)
    return config
