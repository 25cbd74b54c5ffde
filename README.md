# lachesisbft

Building blocks for an asynchronous Byzantine-fault-tolerant consensus over a
DAG of events. Validators emit events that reference parent events; the
library works out which events are roots of which frame, runs the Atropos
election that fixes the order of frames, and hands the confirmed events of
every decided frame to the application.

Validators are plain mappings of validator id to weight. Events are
duck-typed objects exposing `id`, `creator`, `epoch`, `frame`, `lamport`,
`seq`, `parents` and `self_parent`; event ids are `bytes`.

## Installation

```
pip install lachesisbft
```

For running the test suite:

```
pip install "lachesisbft[test]"
pytest
```

## What is inside

- `lachesisbft.byteorder`: fixed-width unsigned integer encoding
  (`uint64_to_bytes`, `bytes_to_uint64` and the 32 and 16 bit variants), in
  the byte order chosen with `ByteOrder.BIG` (the default) or
  `ByteOrder.LITTLE`. Values that do not fit raise `ValueError`.
- `lachesisbft.prque`: `Prque`, a priority queue that pops the highest
  priority first (`push`, `pop`, `pop_item`, `remove`, `empty`, `len()`,
  `reset`). An optional callback is told each element's position, and `-1`
  when it leaves, so elements can be removed from the middle by index.
- `lachesisbft.doublesign`: heuristics that keep a validator from signing
  twice. `synced_to_emit` returns a zero wait when emitting is allowed and
  otherwise raises a `NotSyncedError` subclass (`NoConnectionsError`,
  `P2PSyncOngoingError`, `SelfEventsOngoingError`,
  `JustBecameValidatorError`, `JustConnectedError`, `JustP2PSyncedError`)
  whose `wait` attribute is the minimum delay. `detect_parallel_instance`
  flags a second running instance of the same validator. Both work on a
  `SyncStatus`.
- `lachesisbft.eventcheck`: event validation. `BasicChecker`,
  `EpochChecker` and `ParentsChecker`, combined by `Checkers`, raise a
  subclass of `EventCheckError` when an event must be rejected.
- `lachesisbft.election`: the Atropos `Election` over roots
  (`RootAndSlot`, `Slot`). `process_root` returns a `Res` once a frame is
  decided and raises `ElectionError` on states only possible with more than
  a third of the weight Byzantine. `describe` and `debug_state_hash` help
  inspect the votes.
- `lachesisbft.ancestor`: parent selection for event emitters.
  `choose_parents` applies a list of search strategies (`MetricStrategy`,
  `RandomStrategy`); `PayloadIndexer` and `FCIndexer` supply metrics and
  strategies.
- `lachesisbft.store`: the consensus `Store` with its epoch state, last
  decided state, roots per frame and confirmed events, over any mutable
  mapping of bytes to bytes (`Store.in_memory()` uses dictionaries).
  Configuration via `Config`, `StoreConfig`, `StoreCacheConfig` and
  `Genesis`; `apply_genesis` raises `GenesisError`, and reading state before
  genesis raises `NoGenesisError`.
- `lachesisbft.orderer`: `Orderer`, which computes frames (`build`),
  ingests events (`process`, raising `WrongFrameError` on a wrong claimed
  frame) and reports decided frames through `OrdererCallbacks`.
- `lachesisbft.consensus`: `Lachesis` and `IndexedLachesis`, which add
  cheater detection, confirmed-event traversal and DAG index upkeep, and
  deliver each decided frame as a `Block` through `ConsensusCallbacks` and
  `BlockCallbacks`.

## Example: checking whether it is safe to emit

```python
from datetime import datetime, timedelta

from lachesisbft.doublesign import NotSyncedError, SyncStatus, synced_to_emit

now = datetime.now()
status = SyncStatus(
    peers_num=3,
    now=now,
    startup=now - timedelta(hours=2),
    last_connected=now - timedelta(minutes=1),
    p2p_synced=now - timedelta(hours=1),
    became_validator=now - timedelta(days=1),
)

try:
    synced_to_emit(status, timedelta(minutes=5))
except NotSyncedError as exc:
    print("wait", exc.wait, "because", exc)   # JustConnectedError, 4 minutes
```

## Example: choosing parents

```python
from lachesisbft.ancestor import MetricStrategy, choose_parents

scores = {b"b": 3, b"c": 7, b"d": 1}
strategy = MetricStrategy(lambda ids: max(scores.get(i, 0) for i in ids))

parents = choose_parents([b"a"], [b"b", b"c", b"d"], [strategy, strategy])
# [b"a", b"c", b"b"]
```

## Running consensus

A `Store` (for example `Store.in_memory()`) receives a `Genesis` through
`apply_genesis`. An `IndexedLachesis` is then built over the store, an event
source that can look events up by id (`get_event`, `has_event`), a DAG
indexer providing forkless-cause and vector-clock queries, and a `Config`
(see `lite_config()` and `default_config()`). After `bootstrap` with a
`ConsensusCallbacks`, every new event goes through `build` (which assigns a
placeholder id and the event's frame) and `process`, parents first. Each
decided frame calls `begin_block` with a `Block` naming the Atropos and the
cheaters; `apply_event` is called for each newly confirmed event, and
returning a new validator mapping from `end_block` seals the epoch.

## What the package does not do

- It ships no DAG indexer: the vector-clock and forkless-cause index that
  `Lachesis`, `IndexedLachesis` and `FCIndexer` query must be supplied by
  the caller, as must the event type and the event source.
- It has no on-disk database backend; the `Store` keeps its state in
  whatever mapping it is given.
- It has no command-line tool and no networking; it is a library only.