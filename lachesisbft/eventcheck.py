"""Stateless and epoch-level validity checks for DAG events.

Events are duck-typed: they expose ``id``, ``seq``, ``epoch``, ``frame``,
``lamport``, ``creator``, ``parents`` (a sequence of ids), ``self_parent``
(an id or None) and ``is_self_parent(id)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol

_HUGE_VALUE = 2**31 - 2


class EventCheckError(Exception):
    """An event failed validation."""

    message = "event check failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)


class AlreadyConnectedEventError(EventCheckError):
    message = "event is connected already"


class SpilledEventError(EventCheckError):
    message = "event is spilled"


class DuplicateEventError(EventCheckError):
    message = "event is duplicated"


class NoParentsError(EventCheckError):
    message = "event has no parents"


class NotInitedError(EventCheckError):
    message = "event field is not initialized"


class HugeValueError(EventCheckError):
    message = "too big value"


class DoubleParentsError(EventCheckError):
    message = "event has double parents"


class NotRelevantError(EventCheckError):
    message = "event is too old or too new"


class AuthError(EventCheckError):
    message = "event creator isn't a validator"


class WrongSeqError(EventCheckError):
    message = "event has wrong sequence time"


class WrongLamportError(EventCheckError):
    message = "event has wrong Lamport time"


class WrongSelfParentError(EventCheckError):
    message = "event is missing self-parent"


class _EpochReader(Protocol):
    def get_epoch_validators(self) -> tuple[Any, int]: ...


class BasicChecker:
    """Checks that need nothing but the event itself."""

    def validate(self, event: Any) -> None:
        if max(event.seq, event.epoch, event.frame, event.lamport) >= _HUGE_VALUE:
            raise HugeValueError()
        if min(event.seq, event.epoch, event.frame, event.lamport) <= 0:
            raise NotInitedError()
        parents = list(event.parents)
        if event.seq > 1 and not parents:
            raise NoParentsError()
        if len(set(parents)) != len(parents):
            raise DoubleParentsError()


class EpochChecker:
    """Checks that need only the current epoch and its validators."""

    def __init__(self, reader: _EpochReader) -> None:
        self._reader = reader

    def validate(self, event: Any) -> None:
        # The validator set belongs to the current epoch only, so check epoch first.
        validators, epoch = self._reader.get_epoch_validators()
        if event.epoch != epoch:
            raise NotRelevantError()
        if event.creator not in validators:
            raise AuthError()


class ParentsChecker:
    """Checks that need the event's parent events."""

    def validate(self, event: Any, parents: Optional[Iterable[Any]]) -> None:
        parent_events = list(parents or ())
        parent_ids = list(event.parents)
        if len(parent_ids) != len(parent_events):
            raise ValueError("expected the event's parents as an argument")

        max_lamport = max((p.lamport for p in parent_events), default=0)
        if event.lamport != max_lamport + 1:
            raise WrongLamportError()

        for parent, parent_id in zip(parent_events, parent_ids):
            if (parent.creator == event.creator) != event.is_self_parent(parent_id):
                raise WrongSelfParentError()

        self_parent = event.self_parent
        if (event.seq == 1) != (self_parent is None):
            raise WrongSeqError()
        if self_parent is not None:
            first = parent_events[0]
            if not event.is_self_parent(first.id):
                raise WrongSelfParentError()
            if event.seq != first.seq + 1:
                raise WrongSeqError()


@dataclass
class Checkers:
    """All the checks except consensus-related ones, run in order."""

    basic: BasicChecker
    epoch: EpochChecker
    parents: ParentsChecker

    def validate(self, event: Any, parents: Optional[Iterable[Any]]) -> None:
        self.basic.validate(event)
        self.epoch.validate(event)
        self.parents.validate(event, parents)