"""Fan-out of leader commands and acknowledgment tracking."""

from __future__ import annotations

import logging
import random
import string
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from aiomovienight.models.follower import SyncAckPayload
from aiomovienight.models.sync import SyncControlMessage, SyncControlPayload
from aiomovienight.models.types import CommandType
from aiomovienight.scheduler import DeferredCall, Scheduler

# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .connection import Connection

logger = logging.getLogger(__name__)

COMMAND_MAX_AGE_S = 30.0
RETRY_DELAY_S = 1.0
RETRY_SUFFIX = "-retry"
_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_command_id() -> str:
    """Return ``<epoch ms>-<9 random base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


@dataclass(slots=True)
class Command:
    """A leader command sent to followers."""

    id: str
    type: CommandType
    current_time: float
    is_playing: bool | None
    issued_at: float
    """Server monotonic time of the dispatch."""
    acks: dict[str, bool] = field(default_factory=dict)
    """Connection id to the success flag of its last ack."""
    retried: set[str] = field(default_factory=set)
    """Connections that already received the one allowed retry."""

    def message(self, command_id: str | None = None) -> SyncControlMessage:
        """Build the sync/control message for this command."""
        return SyncControlMessage(
            payload=SyncControlPayload(
                type=self.type,
                current_time=self.current_time,
                command_id=command_id or self.id,
                is_playing=self.is_playing,
            )
        )


class CommandDispatcher:
    """Send leader commands to followers and retry failed acks once.

    A follower acknowledging failure receives the same command again after
    ``RETRY_DELAY_S`` under the id ``<id>-retry``. A second failure is only
    recorded. Commands older than ``max_age`` are forgotten and acks for them
    are ignored.
    """

    def __init__(self, scheduler: Scheduler, *, max_age: float = COMMAND_MAX_AGE_S) -> None:
        """Create a dispatcher."""
        self._scheduler = scheduler
        self._max_age = max_age
        self._commands: dict[str, Command] = {}
        self._retries: dict[tuple[str, str], DeferredCall] = {}

    def get(self, command_id: str) -> Command | None:
        """Return the tracked command for ``command_id``, including retry ids."""
        return self._commands.get(command_id)

    def __len__(self) -> int:
        """Return the number of tracked commands."""
        return len({command.id for command in self._commands.values()})

    def dispatch(
        self,
        command_type: CommandType,
        current_time: float,
        is_playing: bool | None,
        followers: Iterable[Connection],
    ) -> Command:
        """Record a new command and send it to ``followers``."""
        self.purge_expired()
        command = Command(
            id=generate_command_id(),
            type=command_type,
            current_time=current_time,
            is_playing=is_playing,
            issued_at=self._scheduler.time(),
        )
        self._commands[command.id] = command
        message = command.message()
        for follower in followers:
            follower.send_message(message)
        logger.info(
            "Leader control: %s at %.1fs [%s]", command_type.value, current_time, command.id
        )
        return command

    def handle_ack(self, connection: Connection, ack: SyncAckPayload) -> Command | None:
        """Record ``ack`` from ``connection``, scheduling a retry on failure."""
        command = self._commands.get(ack.command_id)
        if command is None:
            logger.debug("Ignoring ack for unknown command %s", ack.command_id)
            return None

        connection_id = connection.connection_id
        command.acks[connection_id] = ack.success
        logger.info(
            "Sync ack from %s: %s success=%s time=%.1fs",
            connection.name,
            ack.command_id[-8:],
            ack.success,
            ack.current_time,
        )
        if ack.success or connection_id in command.retried:
            return command

        command.retried.add(connection_id)
        retry_id = command.id + RETRY_SUFFIX
        self._commands[retry_id] = command
        key = (command.id, connection_id)
        retry = self._retries.get(key)
        if retry is None:
            retry = self._retries[key] = DeferredCall(self._scheduler)

        def _send_retry() -> None:
            self._retries.pop(key, None)
            if connection.connected:
                logger.info("Retrying %s for %s", command.id, connection.name)
                connection.send_message(command.message(retry_id))

        retry.schedule(RETRY_DELAY_S, _send_retry)
        return command

    def cancel_retries(self, connection: Connection) -> None:
        """Drop pending retries addressed to ``connection``."""
        for key in [key for key in self._retries if key[1] == connection.connection_id]:
            self._retries.pop(key).cancel()

    def purge_expired(self) -> int:
        """Forget commands older than the maximum age; return how many were dropped."""
        now = self._scheduler.time()
        expired = [
            command_id
            for command_id, command in self._commands.items()
            if now - command.issued_at > self._max_age
        ]
        for command_id in expired:
            del self._commands[command_id]
        if expired:
            logger.debug("Purged %d expired command ids", len(expired))
        return len(expired)

    def close(self) -> None:
        """Cancel all pending retries."""
        for retry in self._retries.values():
            retry.cancel()
        self._retries.clear()
