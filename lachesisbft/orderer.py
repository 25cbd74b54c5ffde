"""Event ordering: frame assignment, root tracking and Atropos decisions.

Events are duck-typed: they expose ``id`` (32 bytes), ``creator``, ``epoch``,
``frame`` (assignable by ``Orderer.build``), ``parents`` (a sequence of ids)
and ``self_parent`` (an id or None). Validators are a mapping of validator id
to weight.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol

from .election import Election, Res, RootAndSlot, Slot
from .store import FIRST_FRAME, Config, EpochState, LastDecidedState, Store

ApplyAtroposFn = Callable[[int, bytes], Optional[Mapping[int, int]]]
EpochDBLoadedFn = Callable[[int], None]
EventFilterFn = Callable[[Any], bool]


class EventSource(Protocol):
    """Gives access to events kept outside the orderer."""

    def has_event(self, event_id: bytes) -> bool: ...

    def get_event(self, event_id: bytes) -> Any: ...


class OrdererDagIndex(Protocol):
    """Tells whether event ``a_id`` is forkless caused by event ``b_id``."""

    def forkless_cause(self, a_id: bytes, b_id: bytes) -> bool: ...


@dataclass
class OrdererCallbacks:
    """Hooks called by the orderer.

    ``apply_atropos`` receives each decided frame and its Atropos; returning a
    validator mapping seals the epoch with those validators. ``epoch_db_loaded``
    is told the epoch whose database was just opened.
    """

    apply_atropos: Optional[ApplyAtroposFn] = None
    epoch_db_loaded: Optional[EpochDBLoadedFn] = None


class WrongFrameError(Exception):
    """The frame claimed by an event differs from the calculated one."""

    def __init__(self, message: str = "claimed frame mismatched with calculated") -> None:
        super().__init__(message)


class AlreadyBootstrappedError(Exception):
    """The orderer was already started."""

    def __init__(self, message: str = "already bootstrapped") -> None:
        super().__init__(message)


class Orderer:
    """Reaches finality on the order of events; detects no cheaters."""

    def __init__(
        self,
        store: Store,
        source: EventSource,
        dag_index: OrdererDagIndex,
        config: Config,
    ) -> None:
        self.store = store
        self.source = source
        self.dag_index = dag_index
        self.config = config
        self._election: Optional[Election] = None
        self._orderer_callbacks = OrdererCallbacks()

    # starting

    def bootstrap(self, callbacks: OrdererCallbacks) -> None:
        """Restore the state from the store and re-run the pending election."""
        if self._election is not None:
            raise AlreadyBootstrappedError()
        self._orderer_callbacks = callbacks

        self.store.open_epoch_db(self.store.epoch)
        self._notify_epoch_db_loaded(self.store.epoch)
        self._election = Election(
            self.store.validators,
            self.store.last_decided_frame + 1,
            self.dag_index.forkless_cause,
            self.store.frame_roots,
        )
        self._bootstrap_election()

    def start_from(
        self, callbacks: OrdererCallbacks, epoch: int, validators: Mapping[int, int]
    ) -> None:
        """Start from an empty ``epoch`` with the given validators."""
        if self._election is not None:
            raise AlreadyBootstrappedError()
        self._orderer_callbacks = callbacks

        self.store.apply_epoch(epoch, validators)
        self._reset_epoch_store(epoch)
        self._notify_epoch_db_loaded(self.store.epoch)
        self._election = Election(
            validators, FIRST_FRAME, self.dag_index.forkless_cause, self.store.frame_roots
        )

    def reset(self, epoch: int, validators: Mapping[int, int]) -> None:
        """Switch to a new empty ``epoch`` with the given validators."""
        election = self._require_election()
        self.store.apply_epoch(epoch, validators)
        self._reset_epoch_store(epoch)
        self._notify_epoch_db_loaded(self.store.epoch)
        election.reset(validators, FIRST_FRAME)

    # events

    def build(self, event: Any) -> None:
        """Fill in the event's frame."""
        if event.epoch != self.store.epoch:
            raise ValueError("event has wrong epoch")
        if event.creator not in self.store.validators:
            raise ValueError("event wasn't created by an existing validator")
        _, frame = self._calc_frame(event)
        event.frame = frame

    def process(self, event: Any) -> None:
        """Take an event into processing; parents must be processed first."""
        election = self._require_election()
        self_parent_frame = self._check_and_save_event(event)
        self._handle_election(election, self_parent_frame, event)

    # internals

    def _require_election(self) -> Election:
        if self._election is None:
            raise RuntimeError("orderer is not bootstrapped")
        return self._election

    def _notify_epoch_db_loaded(self, epoch: int) -> None:
        if self._orderer_callbacks.epoch_db_loaded is not None:
            self._orderer_callbacks.epoch_db_loaded(epoch)

    def _check_and_save_event(self, event: Any) -> int:
        self_parent_frame, frame = self._calc_frame(event)
        if not self.config.suppress_frame_panic and event.frame != frame:
            raise WrongFrameError()
        if self_parent_frame != frame:
            self.store.add_root(self_parent_frame, event)
        return self_parent_frame

    def _handle_election(self, election: Election, self_parent_frame: int, root: Any) -> None:
        for frame in range(self_parent_frame + 1, root.frame + 1):
            decided = election.process_root(
                RootAndSlot(id=bytes(root.id), slot=Slot(frame=frame, validator=root.creator))
            )
            if decided is None:
                continue
            # this root observed that the lowest undecided frame is decided now
            if self._on_frame_decided(decided.frame, decided.atropos):
                break
            if self._bootstrap_election():
                break

    def _bootstrap_election(self) -> bool:
        """Re-run known roots until nothing more is decided; tell if the epoch got sealed."""
        while True:
            decided = self._process_known_roots()
            if decided is None:
                return False
            if self._on_frame_decided(decided.frame, decided.atropos):
                return True

    def _process_known_roots(self) -> Optional[Res]:
        election = self._require_election()
        frame = self.store.last_decided_frame + 1
        while True:
            roots = self.store.frame_roots(frame)
            for root in roots:
                decided = election.process_root(root)
                if decided is not None:
                    return decided
            if not roots:
                return None
            frame += 1

    def _forkless_caused_by_quorum_on(self, event: Any, frame: int) -> bool:
        validators = self.store.validators
        quorum = sum(validators.values()) * 2 // 3 + 1
        seen: set[int] = set()
        weight = 0
        for root in self.store.frame_roots(frame):
            if self.dag_index.forkless_cause(event.id, root.id) and root.slot.validator not in seen:
                seen.add(root.slot.validator)
                weight += validators[root.slot.validator]
            if weight >= quorum:
                return True
        return False

    def _calc_frame(self, event: Any) -> tuple[int, int]:
        """Return the self-parent's frame and the event's frame."""
        if event.self_parent is None:
            return 0, 1
        self_parent_frame = self.source.get_event(event.self_parent).frame
        frame = self_parent_frame
        while self._forkless_caused_by_quorum_on(event, frame):
            frame += 1
        return self_parent_frame, frame

    def _on_frame_decided(self, frame: int, atropos: bytes) -> bool:
        """Move the last decided frame forward; tell if the epoch got sealed."""
        election = self._require_election()
        new_validators = None
        if self._orderer_callbacks.apply_atropos is not None:
            new_validators = self._orderer_callbacks.apply_atropos(frame, atropos)

        if new_validators is not None:
            self._seal_epoch(new_validators)
            election.reset(new_validators, FIRST_FRAME)
            last_decided = FIRST_FRAME - 1
        else:
            election.reset(self.store.validators, frame + 1)
            last_decided = frame
        self.store.last_decided_state = LastDecidedState(last_decided_frame=last_decided)
        return new_validators is not None

    def _reset_epoch_store(self, new_epoch: int) -> None:
        self.store.drop_epoch_db()
        self.store.open_epoch_db(new_epoch)
        self._notify_epoch_db_loaded(new_epoch)

    def _seal_epoch(self, new_validators: Mapping[int, int]) -> None:
        state = self.store.epoch_state
        next_epoch = state.epoch + 1
        self.store.epoch_state = EpochState(epoch=next_epoch, validators=dict(new_validators))
        self._reset_epoch_store(next_epoch)

    def _dfs_subgraph(self, head: bytes, accept: EventFilterFn) -> None:
        """Walk the events observed by ``head`` that ``accept`` lets through.

        ``accept`` may be called more than once for the same event.
        """
        stack: list[bytes] = [head]
        while stack:
            walk = stack.pop()
            event = self.source.get_event(walk)
            if event is None:
                raise LookupError(f"event not found {_format_id(walk)}")
            if not accept(event):
                continue
            stack.extend(_parents_of(event))


def _parents_of(event: Any) -> Iterable[bytes]:
    return event.parents


def _format_id(event_id: bytes) -> str:
    return event_id.hex() if isinstance(event_id, (bytes, bytearray)) else str(event_id)