"""Models for enum types used by movienight."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


# Base message classes
@dataclass
class ClientMessage(DataClassORJSONMixin):
    """Base class for client messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


@dataclass
class ServerMessage(DataClassORJSONMixin):
    """Base class for server messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


# Enums


class CommandType(Enum):
    """Playback control issued by the leader."""

    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"


class NetworkQuality(Enum):
    """Quality tier derived from the rolling round-trip time."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class ClientProfile(Enum):
    """Timing profile of the media pipeline a client runs on."""

    STANDARD = "standard"
    """Desktop class browsers and players with predictable seek/play timing."""
    POWER_CONSTRAINED = "power-constrained"
    """
    Mobile engine with aggressive background power management.

    Exhibits high timing jitter, spurious suspend signals and replayed
    transport messages.
    """

    @classmethod
    def from_user_agent(cls, user_agent: str) -> ClientProfile:
        """Guess the profile from a browser User-Agent header."""
        ua = user_agent.lower()
        if "safari" in ua and "chrome" not in ua:
            if any(token in ua for token in ("mobile", "iphone", "ipad")):
                return cls.POWER_CONSTRAINED
        return cls.STANDARD


class LeaderDenyReason(Enum):
    """Why a leadership request was refused."""

    PASSWORD_REQUIRED = "password_required"
    INCORRECT_PASSWORD = "incorrect_password"
    LEADER_ACTIVE = "leader_active"
