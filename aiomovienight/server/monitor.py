"""Passive drift detection from follower self-reports."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from aiomovienight.models.follower import FollowerStatusPayload
from aiomovienight.models.sync import SyncControlMessage, SyncControlPayload
from aiomovienight.models.types import CommandType, NetworkQuality
from aiomovienight.scheduler import Scheduler

from .session import SessionAuthority

# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .connection import Connection

logger = logging.getLogger(__name__)

STALE_REPORT_S = 2.5
NO_DATA_REPORT_S = 6.0

# Drift that triggers a targeted resync
RESYNC_TOLERANCE_S = {NetworkQuality.POOR: 8.0, NetworkQuality.FAIR: 5.0}
DEFAULT_RESYNC_TOLERANCE_S = 3.0
# Looser drift accepted when displaying viewers as in sync
DISPLAY_TOLERANCE_S = {NetworkQuality.POOR: 10.0, NetworkQuality.FAIR: 8.0}
DEFAULT_DISPLAY_TOLERANCE_S = 5.0


def resync_tolerance(quality: NetworkQuality) -> float:
    """Return the drift above which a follower is resynced."""
    return RESYNC_TOLERANCE_S.get(quality, DEFAULT_RESYNC_TOLERANCE_S)


def display_tolerance(quality: NetworkQuality) -> float:
    """Return the drift below which a follower is shown as in sync."""
    return DISPLAY_TOLERANCE_S.get(quality, DEFAULT_DISPLAY_TOLERANCE_S)


def resync_command_id(connection_id: str) -> str:
    """Return ``<epoch ms>-resync-<last 4 chars of the connection id>``."""
    return f"{int(time.time() * 1000)}-resync-{connection_id[-4:]}"


@dataclass(slots=True)
class FollowerReport:
    """Last self-report of a follower."""

    current_time: float
    is_playing: bool
    buffering: bool
    network_quality: NetworkQuality
    reported_at: float
    """Server monotonic time the report arrived."""


class FollowerSyncStatus(Enum):
    """Staleness-aware sync verdict for one follower."""

    IN_SYNC = "in-sync"
    OUT_OF_SYNC = "out-of-sync"
    BUFFERING = "buffering"
    STALE = "stale"
    NO_DATA = "no-data"
    NEVER_REPORTED = "never-reported"


@dataclass(slots=True)
class ViewerStatus:
    """Display verdict for one follower."""

    status: FollowerSyncStatus
    drift: float | None = None
    report_age: float | None = None


@dataclass(slots=True)
class SyncSummary:
    """Counts over all followers."""

    total: int = 0
    in_sync: int = 0
    out_of_sync: int = 0
    buffering: int = 0
    stale: int = 0
    no_data: int = 0
    never_reported: int = 0


class ViewerSyncMonitor:
    """Compare follower reports with the canonical position.

    Followers drifting past ``resync_tolerance`` or disagreeing on the play
    state get a targeted corrective command. This layer is independent of the
    followers' own correction tolerance.
    """

    def __init__(self, session: SessionAuthority, scheduler: Scheduler) -> None:
        """Create a monitor over ``session``."""
        self._session = session
        self._scheduler = scheduler
        self._reports: dict[str, FollowerReport] = {}

    def report(self, connection: Connection) -> FollowerReport | None:
        """Return the last report of ``connection``."""
        return self._reports.get(connection.connection_id)

    def forget(self, connection: Connection) -> None:
        """Drop the report of a disconnected follower."""
        self._reports.pop(connection.connection_id, None)

    def on_report(self, connection: Connection, payload: FollowerStatusPayload) -> bool:
        """Store a report and resync the follower if needed; return True on resync."""
        self._reports[connection.connection_id] = FollowerReport(
            current_time=payload.current_time,
            is_playing=payload.is_playing,
            buffering=payload.buffering,
            network_quality=payload.network_quality,
            reported_at=self._scheduler.time(),
        )

        expected = self._session.current_position()
        is_playing = self._session.is_playing
        drift = abs(payload.current_time - expected)
        play_state_mismatch = payload.is_playing != is_playing
        if drift <= resync_tolerance(payload.network_quality) and not play_state_mismatch:
            return False

        logger.warning(
            "Viewer %s out of sync: diff=%.1fs, play=%s/%s",
            connection.name,
            drift,
            payload.is_playing,
            is_playing,
        )
        connection.send_message(
            SyncControlMessage(
                payload=SyncControlPayload(
                    type=CommandType.PLAY if is_playing else CommandType.PAUSE,
                    current_time=expected,
                    command_id=resync_command_id(connection.connection_id),
                    is_playing=is_playing,
                )
            )
        )
        return True

    def status(self, connection: Connection) -> ViewerStatus:
        """Return the display verdict for ``connection``."""
        report = self._reports.get(connection.connection_id)
        if report is None:
            return ViewerStatus(FollowerSyncStatus.NEVER_REPORTED)

        now = self._scheduler.time()
        age = now - report.reported_at
        if age > NO_DATA_REPORT_S:
            return ViewerStatus(FollowerSyncStatus.NO_DATA, report_age=age)
        if age > STALE_REPORT_S:
            return ViewerStatus(FollowerSyncStatus.STALE, report_age=age)
        if report.buffering:
            return ViewerStatus(FollowerSyncStatus.BUFFERING, report_age=age)

        # Compare against the canonical position at report time.
        expected = self._session.snapshot().position_at(report.reported_at)
        drift = abs(report.current_time - expected)
        in_sync = (
            drift <= display_tolerance(report.network_quality)
            and report.is_playing == self._session.is_playing
        )
        return ViewerStatus(
            FollowerSyncStatus.IN_SYNC if in_sync else FollowerSyncStatus.OUT_OF_SYNC,
            drift=drift,
            report_age=age,
        )

    def summary(self, followers: Iterable[Connection]) -> SyncSummary:
        """Count follower verdicts."""
        summary = SyncSummary()
        for follower in followers:
            summary.total += 1
            match self.status(follower).status:
                case FollowerSyncStatus.IN_SYNC:
                    summary.in_sync += 1
                case FollowerSyncStatus.OUT_OF_SYNC:
                    summary.out_of_sync += 1
                case FollowerSyncStatus.BUFFERING:
                    summary.buffering += 1
                case FollowerSyncStatus.STALE:
                    summary.stale += 1
                case FollowerSyncStatus.NO_DATA:
                    summary.no_data += 1
                case FollowerSyncStatus.NEVER_REPORTED:
                    summary.never_reported += 1
        return summary
