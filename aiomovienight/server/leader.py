"""Arbitration of the single leader slot."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aiomovienight.models.core import LeaderInfo
from aiomovienight.models.types import LeaderDenyReason

# The cyclic import is not an issue during runtime, so hide it
# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .connection import Connection

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LeaderDecision:
    """Result of a leadership request."""

    granted: bool
    reason: LeaderDenyReason | None = None
    leader: LeaderInfo | None = None
    """Current holder, set when the slot was taken."""


class LeaderArbiter:
    """Grant, deny and reassign the leader slot.

    At most one live connection holds the slot. A holder whose connection is no
    longer live is evicted on the next request, so a dropped leader never
    blocks the session.
    """

    def __init__(
        self,
        password: str | None = None,
        on_change: Callable[[bool], None] | None = None,
    ) -> None:
        """Create an arbiter; ``on_change`` receives ``has_leader`` on every grant and clear."""
        self._password = password
        self._on_change = on_change
        self._leader: Connection | None = None

    @property
    def leader(self) -> Connection | None:
        """Return the live leader connection, if any."""
        if self._leader is not None and not self._leader.connected:
            return None
        return self._leader

    @property
    def has_leader(self) -> bool:
        """Return True while a live connection holds the slot."""
        return self.leader is not None

    def is_leader(self, connection: Connection) -> bool:
        """Return True if ``connection`` holds the slot."""
        return self._leader is connection and connection.connected

    def _check_password(self, password: str | None) -> LeaderDenyReason | None:
        if not self._password:
            return None
        if not password:
            return LeaderDenyReason.PASSWORD_REQUIRED
        if not hmac.compare_digest(password.encode(), self._password.encode()):
            return LeaderDenyReason.INCORRECT_PASSWORD
        return None

    def request_leader(self, connection: Connection, password: str | None = None) -> LeaderDecision:
        """Try to give ``connection`` the leader slot."""
        if self._leader is connection and connection.connected:
            return LeaderDecision(granted=True)

        reason = self._check_password(password)
        if reason is not None:
            logger.info("Leader denied to %s: %s", connection.name, reason.value)
            return LeaderDecision(granted=False, reason=reason)

        current = self._leader
        if current is not None:
            if current.connected:
                logger.info(
                    "Leader denied to %s: slot taken by %s", connection.name, current.name
                )
                return LeaderDecision(
                    granted=False,
                    reason=LeaderDenyReason.LEADER_ACTIVE,
                    leader=LeaderInfo(client_id=current.client_id, name=current.name),
                )
            logger.info("Evicting stale leader %s", current.name)

        self._leader = connection
        logger.info("Leader granted to %s (%s)", connection.name, connection.client_id)
        if self._on_change is not None:
            self._on_change(True)
        return LeaderDecision(granted=True)

    def release(self, connection: Connection) -> bool:
        """Clear the slot if ``connection`` holds it; return True if it did."""
        if self._leader is not connection:
            return False
        self._leader = None
        logger.info("Leader slot now available")
        if self._on_change is not None:
            self._on_change(False)
        return True
