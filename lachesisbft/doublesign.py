"""Heuristics that keep a validator from signing conflicting events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

# datetime.min stands for a moment that never happened.
_ZERO_TIME = datetime.min


class NotSyncedError(Exception):
    """The node must not emit events yet; ``wait`` is the minimum delay."""

    message = "not synced"

    def __init__(self, wait: timedelta = timedelta(0)) -> None:
        super().__init__(self.message)
        self.wait = wait


class NoConnectionsError(NotSyncedError):
    message = "no connections"


class P2PSyncOngoingError(NotSyncedError):
    message = "P2P synchronization isn't finished"


class SelfEventsOngoingError(NotSyncedError):
    message = "not downloaded all the self-events"


class JustBecameValidatorError(NotSyncedError):
    message = "just joined the validators group"


class JustConnectedError(NotSyncedError):
    message = "recently connected"


class JustP2PSyncedError(NotSyncedError):
    message = "waiting additional time"


@dataclass
class SyncStatus:
    """Moments relevant to deciding whether it is safe to emit events.

    A field left at ``datetime.min`` means the moment never happened.
    """

    peers_num: int = 0
    now: datetime = _ZERO_TIME
    startup: datetime = _ZERO_TIME
    last_connected: datetime = _ZERO_TIME
    p2p_synced: datetime = _ZERO_TIME
    became_validator: datetime = _ZERO_TIME
    external_self_event_created: datetime = _ZERO_TIME
    external_self_event_detected: datetime = _ZERO_TIME

    def since(self, t: datetime) -> timedelta:
        """Time elapsed from ``t`` until ``now``."""
        return self.now - t


def detect_parallel_instance(status: SyncStatus, threshold: timedelta) -> bool:
    """Tell whether another instance with the same key is likely running.

    Call after downloading a self-event that was not created by this instance.
    """
    if status.external_self_event_created < status.startup:
        return False
    return status.since(status.external_self_event_created) < threshold


def synced_to_emit(status: SyncStatus, threshold: timedelta) -> timedelta:
    """Check that the node may emit events.

    Returns a zero wait when emitting is allowed; otherwise raises a
    NotSyncedError subclass carrying the minimum time to wait.
    """
    if status.peers_num == 0:
        raise NoConnectionsError()
    if status.p2p_synced == _ZERO_TIME:
        raise P2PSyncOngoingError()

    checks = (
        (status.external_self_event_detected, SelfEventsOngoingError),
        (status.external_self_event_created, SelfEventsOngoingError),
        (status.became_validator, JustBecameValidatorError),
        (status.last_connected, JustConnectedError),
        (status.p2p_synced, JustP2PSyncedError),
    )
    wait = timedelta(0)
    reason: Optional[type[NotSyncedError]] = None
    for moment, error_type in checks:
        remaining = threshold - status.since(moment)
        if remaining > wait:
            wait, reason = remaining, error_type
    if reason is not None:
        raise reason(wait)
    return wait