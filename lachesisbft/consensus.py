"""General-purpose consensus on top of the orderer.

``Lachesis`` adds cheater detection and traversal of newly confirmed events
to the bare ``Orderer``. ``IndexedLachesis`` also keeps a DAG indexer up to
date with every built and processed event.

Events are duck-typed as for the orderer; ``IndexedLachesis.build`` also
reads ``lamport`` and assigns ``id``. Validators are a mapping of validator
id to weight, ordered by weight, heaviest first, and by id among equal
weights.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, MutableMapping, Optional, Protocol

from .byteorder import uint32_to_bytes
from .election import HighestBeforeSeq
from .orderer import EventSource, Orderer, OrdererCallbacks
from .store import Config, Store

_DIRTY_ID_SIZE = 24

ApplyEventFn = Callable[[Any], None]
EndBlockFn = Callable[[], Optional[Mapping[int, int]]]


@dataclass(frozen=True)
class Block:
    """A decided block: its Atropos and the validators caught forking."""

    atropos: bytes
    cheaters: tuple[int, ...] = ()


@dataclass
class BlockCallbacks:
    """Hooks for one block.

    ``apply_event`` is called for every event the block confirms;
    ``end_block`` may return new validators to seal the epoch with.
    """

    apply_event: Optional[ApplyEventFn] = None
    end_block: Optional[EndBlockFn] = None


@dataclass
class ConsensusCallbacks:
    """Hooks called by the consensus; ``begin_block`` opens each decided block."""

    begin_block: Optional[Callable[[Block], BlockCallbacks]] = None


class DagIndex(Protocol):
    """Forkless-cause relation and vector clocks of events."""

    def forkless_cause(self, a_id: bytes, b_id: bytes) -> bool: ...

    def get_merged_highest_before(self, event_id: bytes) -> HighestBeforeSeq: ...


class DagIndexer(DagIndex, Protocol):
    """A DAG index that is fed events and can roll back unflushed ones."""

    def add(self, event: Any) -> None: ...

    def flush(self) -> None: ...

    def drop_not_flushed(self) -> None: ...

    def reset(
        self,
        validators: Mapping[int, int],
        db: MutableMapping[bytes, bytes],
        get_event: Callable[[bytes], Any],
    ) -> None: ...


def _sorted_validator_ids(validators: Mapping[int, int]) -> list[int]:
    return sorted(validators, key=lambda v: (-validators[v], v))


class Lachesis(Orderer):
    """Orders events, detects cheaters and walks newly confirmed events."""

    def __init__(
        self,
        store: Store,
        source: EventSource,
        dag_index: DagIndex,
        config: Config,
    ) -> None:
        super().__init__(store, source, dag_index, config)
        self._consensus_callbacks = ConsensusCallbacks()

    def bootstrap(self, callbacks: ConsensusCallbacks) -> None:
        """Restore the state from the store, then report blocks to ``callbacks``."""
        self.bootstrap_with_orderer(callbacks, self.orderer_callbacks())

    def bootstrap_with_orderer(
        self, callbacks: ConsensusCallbacks, orderer_callbacks: OrdererCallbacks
    ) -> None:
        """Like ``bootstrap``, with custom orderer hooks."""
        Orderer.bootstrap(self, orderer_callbacks)
        self._consensus_callbacks = callbacks

    def start_from(
        self, callbacks: ConsensusCallbacks, epoch: int, validators: Mapping[int, int]
    ) -> None:
        """Start from an empty ``epoch`` with the given validators."""
        self.start_from_with_orderer(callbacks, epoch, validators, self.orderer_callbacks())

    def start_from_with_orderer(
        self,
        callbacks: ConsensusCallbacks,
        epoch: int,
        validators: Mapping[int, int],
        orderer_callbacks: OrdererCallbacks,
    ) -> None:
        """Like ``start_from``, with custom orderer hooks."""
        Orderer.start_from(self, orderer_callbacks, epoch, validators)
        self._consensus_callbacks = callbacks

    def orderer_callbacks(self) -> OrdererCallbacks:
        """Orderer hooks that turn decided frames into blocks."""
        return OrdererCallbacks(apply_atropos=self._apply_atropos)

    def _confirm_events(
        self, frame: int, atropos: bytes, on_event_confirmed: Optional[ApplyEventFn]
    ) -> None:
        def accept(event: Any) -> bool:
            if self.store.event_confirmed_on(event.id) != 0:
                return False
            self.store.set_event_confirmed_on(event.id, frame)
            if on_event_confirmed is not None:
                on_event_confirmed(event)
            return True

        self._dfs_subgraph(atropos, accept)

    def _apply_atropos(self, decided_frame: int, atropos: bytes) -> Optional[Mapping[int, int]]:
        clock = self.dag_index.get_merged_highest_before(atropos)
        # cheaters are listed in validator order, so deterministically
        cheaters = tuple(
            creator
            for i, creator in enumerate(_sorted_validator_ids(self.store.validators))
            if clock.get(i).is_fork_detected()
        )

        begin_block = self._consensus_callbacks.begin_block
        if begin_block is None:
            return None
        block_callbacks = begin_block(Block(atropos=atropos, cheaters=cheaters))

        self._confirm_events(decided_frame, atropos, block_callbacks.apply_event)

        if block_callbacks.end_block is not None:
            return block_callbacks.end_block()
        return None


class IndexedLachesis(Lachesis):
    """Lachesis that also feeds every event into a DAG indexer."""

    def __init__(
        self,
        store: Store,
        source: EventSource,
        dag_indexer: DagIndexer,
        config: Config,
    ) -> None:
        super().__init__(store, source, dag_indexer, config)
        self.dag_indexer = dag_indexer
        self._dirty_counter = 0

    def _next_dirty_id(self, event: Any) -> bytes:
        self._dirty_counter += 1
        counter = self._dirty_counter
        raw = counter.to_bytes((counter.bit_length() + 7) // 8, "big")
        sample = raw[:_DIRTY_ID_SIZE].ljust(_DIRTY_ID_SIZE, b"\x00")
        return uint32_to_bytes(event.epoch) + uint32_to_bytes(getattr(event, "lamport", 0)) + sample

    def build(self, event: Any) -> None:
        """Give the event a placeholder id and fill in its frame."""
        event.id = self._next_dirty_id(event)
        try:
            self.dag_indexer.add(event)
            super().build(event)
        finally:
            self.dag_indexer.drop_not_flushed()

    def process(self, event: Any) -> None:
        """Index the event and take it into processing; parents must come first."""
        try:
            self.dag_indexer.add(event)
            super().process(event)
            self.dag_indexer.flush()
        finally:
            self.dag_indexer.drop_not_flushed()

    def bootstrap(self, callbacks: ConsensusCallbacks) -> None:
        """Restore the state and reset the indexer whenever an epoch DB is loaded."""
        base = self.orderer_callbacks()

        def epoch_db_loaded(epoch: int) -> None:
            if base.epoch_db_loaded is not None:
                base.epoch_db_loaded(epoch)
            self.dag_indexer.reset(
                self.store.validators, self.store.vector_index, self.source.get_event
            )

        self.bootstrap_with_orderer(
            callbacks,
            OrdererCallbacks(apply_atropos=base.apply_atropos, epoch_db_loaded=epoch_db_loaded),
        )