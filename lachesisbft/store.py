"""Persistent consensus state kept over a key-value database.

A database is any mutable mapping of ``bytes`` keys to ``bytes`` values; when
it has ``close()`` or ``drop()`` methods they are used on close and drop.
Validators are a mapping of validator id to weight. Events are duck-typed:
they expose ``id`` (32 bytes), ``creator`` and ``frame``.
"""

from __future__ import annotations

import json
from collections import OrderedDict
from collections.abc import Iterator, MutableMapping
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .byteorder import bytes_to_uint32, uint32_to_bytes
from .election import RootAndSlot, Slot

FIRST_FRAME = 1
FIRST_EPOCH = 1

_FRAME_SIZE = 4
_VALIDATOR_ID_SIZE = 4
_EVENT_ID_SIZE = 32
_ROOT_KEY_SIZE = _FRAME_SIZE + _VALIDATOR_ID_SIZE + _EVENT_ID_SIZE

_DS_KEY = b"d"
_ES_KEY = b"e"

KVStore = MutableMapping[bytes, bytes]
EpochDBProducer = Callable[[int], KVStore]
ScaleFn = Callable[[int], int]


class NoGenesisError(Exception):
    """The store holds no state because genesis was never applied."""

    def __init__(self, message: str = "genesis not applied") -> None:
        super().__init__(message)


class GenesisError(Exception):
    """Genesis cannot be applied."""


@dataclass(frozen=True)
class Config:
    """Consensus settings."""

    # Only for importing old historical event files.
    suppress_frame_panic: bool = False


@dataclass(frozen=True)
class StoreCacheConfig:
    """Cache limits: total cached roots and number of cached frames."""

    roots_num: int
    roots_frames: int


@dataclass(frozen=True)
class StoreConfig:
    cache: StoreCacheConfig


def default_config() -> Config:
    """Settings for a live network."""
    return Config(suppress_frame_panic=False)


def lite_config() -> Config:
    """Settings for tests and in-memory use."""
    return Config(suppress_frame_panic=False)


def _no_scale(n: int) -> int:
    return n


def default_store_config(scale: ScaleFn = _no_scale) -> StoreConfig:
    """Store settings for a live network, with cache sizes passed through ``scale``."""
    return StoreConfig(StoreCacheConfig(roots_num=scale(1000), roots_frames=scale(100)))


def lite_store_config() -> StoreConfig:
    """Store settings for tests and in-memory use: caches 20 times smaller."""
    return default_store_config(lambda n: n // 20)


@dataclass(frozen=True)
class LastDecidedState:
    """State that changes only once a frame is decided."""

    last_decided_frame: int


@dataclass(frozen=True)
class EpochState:
    """State that changes only when the epoch changes."""

    epoch: int
    validators: Mapping[int, int]

    def __str__(self) -> str:
        members = ",".join(f"{v}:{w}" for v, w in self.validators.items())
        return f"{self.epoch}/[{members}]"


@dataclass(frozen=True)
class Genesis:
    """Initial epoch and its validators."""

    epoch: int
    validators: Mapping[int, int]


def _encode_epoch_state(state: EpochState) -> bytes:
    payload = {
        "epoch": state.epoch,
        "validators": [[int(v), int(w)] for v, w in state.validators.items()],
    }
    return json.dumps(payload, separators=(",", ":")).encode()


def _decode_epoch_state(raw: bytes) -> EpochState:
    payload = json.loads(raw)
    return EpochState(
        epoch=payload["epoch"],
        validators={int(v): int(w) for v, w in payload["validators"]},
    )


def _encode_last_decided(state: LastDecidedState) -> bytes:
    return json.dumps({"last_decided_frame": state.last_decided_frame}).encode()


def _decode_last_decided(raw: bytes) -> LastDecidedState:
    return LastDecidedState(last_decided_frame=json.loads(raw)["last_decided_frame"])


def _close_db(db: Any) -> None:
    close = getattr(db, "close", None)
    if callable(close):
        close()


def _drop_db(db: Any) -> None:
    drop = getattr(db, "drop", None)
    if callable(drop):
        drop()
    else:
        db.clear()


class _Table(MutableMapping):
    """A view of the keys of a database that start with a fixed prefix."""

    def __init__(self, db: KVStore, prefix: bytes) -> None:
        self._db = db
        self._prefix = prefix

    def __getitem__(self, key: bytes) -> bytes:
        return self._db[self._prefix + key]

    def __setitem__(self, key: bytes, value: bytes) -> None:
        self._db[self._prefix + key] = value

    def __delitem__(self, key: bytes) -> None:
        del self._db[self._prefix + key]

    def __iter__(self) -> Iterator[bytes]:
        return (key for key, _ in self.scan())

    def __len__(self) -> int:
        return sum(1 for _ in self.scan())

    def scan(self, prefix: bytes = b"") -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs whose keys start with ``prefix``, in key order."""
        full = self._prefix + prefix
        keys = sorted(k for k in self._db if k.startswith(full))
        cut = len(self._prefix)
        for key in keys:
            yield key[cut:], self._db[key]


class _WeightedLRU:
    """LRU cache bounded both by total weight and by number of entries."""

    def __init__(self, max_weight: int, max_size: int) -> None:
        self._max_weight = max_weight
        self._max_size = max_size
        self._entries: OrderedDict[Any, tuple[Any, int]] = OrderedDict()
        self._weight = 0

    def get(self, key: Any) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        return entry[0]

    def add(self, key: Any, value: Any, weight: int) -> None:
        old = self._entries.pop(key, None)
        if old is not None:
            self._weight -= old[1]
        self._entries[key] = (value, weight)
        self._weight += weight
        while self._entries and (
            self._weight > self._max_weight or len(self._entries) > self._max_size
        ):
            _, (_, evicted) = self._entries.popitem(last=False)
            self._weight -= evicted

    def purge(self) -> None:
        self._entries.clear()
        self._weight = 0


class Store:
    """Consensus state over a main database and one database per epoch."""

    def __init__(self, main_db: KVStore, get_epoch_db: EpochDBProducer, cfg: StoreConfig) -> None:
        self.cfg = cfg
        self._main_db: Optional[KVStore] = main_db
        self._get_epoch_db = get_epoch_db
        self._last_decided_table: Optional[_Table] = _Table(main_db, b"c")
        self._epoch_state_table: Optional[_Table] = _Table(main_db, b"e")

        self._last_decided: Optional[LastDecidedState] = None
        self._epoch_state: Optional[EpochState] = None
        self._frame_roots = _WeightedLRU(cfg.cache.roots_num, cfg.cache.roots_frames)

        self._epoch_db: Optional[KVStore] = None
        self._roots: Optional[_Table] = None
        self._vector_index: Optional[_Table] = None
        self._confirmed: Optional[_Table] = None

    @classmethod
    def in_memory(cls) -> "Store":
        """A blank store kept in dictionaries."""
        return cls({}, lambda epoch: {}, lite_store_config())

    def close(self) -> None:
        """Leave the underlying databases."""
        self._last_decided_table = None
        self._epoch_state_table = None
        self._last_decided = None
        self._epoch_state = None
        self._frame_roots.purge()
        self._roots = self._vector_index = self._confirmed = None
        if self._main_db is not None:
            _close_db(self._main_db)
            self._main_db = None
        if self._epoch_db is not None:
            _close_db(self._epoch_db)

    @staticmethod
    def _main_table(table: Optional[_Table]) -> _Table:
        if table is None:
            raise RuntimeError("store is closed")
        return table

    @staticmethod
    def _epoch_table(table: Optional[_Table]) -> _Table:
        if table is None:
            raise RuntimeError("epoch DB is not open")
        return table

    # genesis and epochs

    def apply_genesis(self, genesis: Optional[Genesis]) -> None:
        """Write the initial state; refuse if it was written already."""
        if genesis is None:
            raise GenesisError("genesis config shouldn't be nil")
        if not genesis.validators:
            raise GenesisError("genesis validators shouldn't be empty")
        if _DS_KEY in self._main_table(self._last_decided_table):
            raise GenesisError("genesis already applied")
        self.apply_epoch(genesis.epoch, genesis.validators)

    def apply_epoch(self, epoch: int, validators: Mapping[int, int]) -> None:
        """Switch to a new empty epoch with the given validators."""
        self.epoch_state = EpochState(epoch=epoch, validators=dict(validators))
        self.last_decided_state = LastDecidedState(last_decided_frame=FIRST_FRAME - 1)

    def open_epoch_db(self, epoch: int) -> None:
        """Open the database of ``epoch`` and make it current."""
        self._frame_roots.purge()
        db = self._get_epoch_db(epoch)
        self._epoch_db = db
        self._roots = _Table(db, b"r")
        self._vector_index = _Table(db, b"v")
        self._confirmed = _Table(db, b"C")

    def drop_epoch_db(self) -> None:
        """Close and erase the current epoch database, if any."""
        db = self._epoch_db
        if db is None:
            return
        _close_db(db)
        _drop_db(db)
        self._epoch_db = None
        self._roots = self._vector_index = self._confirmed = None

    # epoch state

    @property
    def epoch_state(self) -> EpochState:
        if self._epoch_state is None:
            raw = self._main_table(self._epoch_state_table).get(_ES_KEY)
            if raw is None:
                raise NoGenesisError()
            self._epoch_state = _decode_epoch_state(raw)
        return self._epoch_state

    @epoch_state.setter
    def epoch_state(self, state: EpochState) -> None:
        self._main_table(self._epoch_state_table)[_ES_KEY] = _encode_epoch_state(state)
        self._epoch_state = state

    @property
    def epoch(self) -> int:
        return self.epoch_state.epoch

    @property
    def validators(self) -> Mapping[int, int]:
        return self.epoch_state.validators

    # last decided state

    @property
    def last_decided_state(self) -> LastDecidedState:
        if self._last_decided is None:
            raw = self._main_table(self._last_decided_table).get(_DS_KEY)
            if raw is None:
                raise NoGenesisError()
            self._last_decided = _decode_last_decided(raw)
        return self._last_decided

    @last_decided_state.setter
    def last_decided_state(self, state: LastDecidedState) -> None:
        self._main_table(self._last_decided_table)[_DS_KEY] = _encode_last_decided(state)
        self._last_decided = state

    @property
    def last_decided_frame(self) -> int:
        return self.last_decided_state.last_decided_frame

    # per-epoch data

    @property
    def vector_index(self) -> MutableMapping[bytes, bytes]:
        """The current epoch's table reserved for the DAG index."""
        return self._epoch_table(self._vector_index)

    def set_event_confirmed_on(self, event_id: bytes, frame: int) -> None:
        """Record the frame in which an event was confirmed."""
        self._epoch_table(self._confirmed)[bytes(event_id)] = uint32_to_bytes(frame)

    def event_confirmed_on(self, event_id: bytes) -> int:
        """The frame in which an event was confirmed, or 0 if it was not."""
        raw = self._epoch_table(self._confirmed).get(bytes(event_id))
        if raw is None:
            return 0
        return bytes_to_uint32(raw)

    def confirmed_events(self) -> MutableMapping[bytes, bytes]:
        """The current epoch's table of confirmed events."""
        return self._epoch_table(self._confirmed)

    def add_root(self, self_parent_frame: int, root: Any) -> None:
        """Store ``root`` as a root of every frame above its self-parent's, up to its own."""
        for frame in range(self_parent_frame + 1, root.frame + 1):
            self._add_root(root, frame)

    def _add_root(self, root: Any, frame: int) -> None:
        event_id = bytes(root.id)
        if len(event_id) != _EVENT_ID_SIZE:
            raise ValueError(f"event id must be {_EVENT_ID_SIZE} bytes, got {len(event_id)}")
        record = RootAndSlot(id=event_id, slot=Slot(frame=frame, validator=root.creator))
        key = uint32_to_bytes(frame) + uint32_to_bytes(root.creator) + event_id
        self._epoch_table(self._roots)[key] = b""

        cached = self._frame_roots.get(frame)
        if cached is not None:
            updated = cached + (record,)
            self._frame_roots.add(frame, updated, len(updated))

    def frame_roots(self, frame: int) -> tuple[RootAndSlot, ...]:
        """All the roots of ``frame``, ordered by validator and id."""
        cached = self._frame_roots.get(frame)
        if cached is not None:
            return cached

        roots = []
        for key, _ in self._epoch_table(self._roots).scan(uint32_to_bytes(frame)):
            if len(key) != _ROOT_KEY_SIZE:
                raise RuntimeError(f"roots table: incorrect key len={len(key)}")
            root_frame = bytes_to_uint32(key[:_FRAME_SIZE])
            validator = bytes_to_uint32(key[_FRAME_SIZE:_FRAME_SIZE + _VALIDATOR_ID_SIZE])
            if root_frame != frame:
                raise RuntimeError(f"roots table: invalid frame={root_frame}, expected={frame}")
            roots.append(
                RootAndSlot(
                    id=bytes(key[_FRAME_SIZE + _VALIDATOR_ID_SIZE:]),
                    slot=Slot(frame=root_frame, validator=validator),
                )
            )
        result = tuple(roots)
        self._frame_roots.add(frame, result, len(result))
        return result