"""Exceptions raised by movienight."""

from __future__ import annotations


class MovieNightError(Exception):
    """Base class for all movienight errors."""


class SessionConfigError(MovieNightError, ValueError):
    """The session descriptor is missing or malformed."""


class PlaybackNotAllowedError(MovieNightError):
    """The player refused to start without a user gesture."""


class NotConnectedError(MovieNightError, RuntimeError):
    """An operation needed a live connection to the server."""
