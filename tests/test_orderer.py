import random
from dataclasses import dataclass, field
from typing import Optional

import pytest

from lachesisbft.orderer import (
    AlreadyBootstrappedError,
    Orderer,
    OrdererCallbacks,
    WrongFrameError,
)
from lachesisbft.store import (
    Config,
    Genesis,
    NoGenesisError,
    Store,
    lite_config,
    lite_store_config,
)


def make_id(creator, seq):
    return bytes([creator, seq]) + bytes(30)


@dataclass
class FakeEvent:
    id: bytes
    creator: int
    seq: int
    epoch: int
    lamport: int
    parents: list = field(default_factory=list)
    frame: int = 0

    @property
    def self_parent(self):
        return self.parents[0] if self.seq > 1 else None


class EventDB(dict):
    def get_event(self, event_id):
        return self.get(event_id)

    def has_event(self, event_id):
        return event_id in self


class AncestryIndex:
    """Treats every ancestor (and the event itself) as forkless causing it."""

    def __init__(self, events):
        self._events = events

    def forkless_cause(self, a_id, b_id):
        stack, seen = [a_id], set()
        while stack:
            current = stack.pop()
            if current == b_id:
                return True
            if current in seen:
                continue
            seen.add(current)
            event = self._events.get(current)
            if event is not None:
                stack.extend(event.parents)
        return False


class Recorder:
    def __init__(self, seal_at: Optional[int] = None, new_validators=None):
        self.seal_at = seal_at
        self.new_validators = new_validators
        self.decided = []
        self.loaded = []

    def apply_atropos(self, frame, atropos):
        self.decided.append((frame, atropos))
        if frame == self.seal_at:
            return self.new_validators
        return None

    def epoch_db_loaded(self, epoch):
        self.loaded.append(epoch)

    def callbacks(self):
        return OrdererCallbacks(self.apply_atropos, self.epoch_db_loaded)


def make_orderer(validators, recorder, config=None, store=None, epoch=1):
    events = EventDB()
    store = store if store is not None else Store.in_memory()
    orderer = Orderer(store, events, AncestryIndex(events), config or lite_config())
    orderer.start_from(recorder.callbacks(), epoch, validators)
    return orderer, events


def emit(orderer, events, creator, seq, parents, lamport):
    event = FakeEvent(make_id(creator, seq), creator, seq, orderer.store.epoch, lamport, list(parents))
    events[event.id] = event
    orderer.build(event)
    orderer.process(event)
    return event


def build_chain(orderer, events, length, creator=1):
    chain = []
    for seq in range(1, length + 1):
        parents = [chain[-1].id] if chain else []
        chain.append(emit(orderer, events, creator, seq, parents, seq))
    return chain


def round_robin(orderer, events, validators, rounds):
    latest, ordered = {}, []
    for _ in range(rounds):
        for v in validators:
            parents = [latest[v].id] if v in latest else []
            parents += [latest[o].id for o in validators if o != v and o in latest]
            seq = latest[v].seq + 1 if v in latest else 1
            event = emit(orderer, events, v, seq, parents, len(ordered) + 1)
            latest[v] = event
            ordered.append(event)
    return ordered


def shuffled_topological(ordered, rng):
    remaining, done, out = list(ordered), set(), []
    while remaining:
        ready = [e for e in remaining if all(p in done for p in e.parents)]
        pick = rng.choice(ready)
        remaining.remove(pick)
        done.add(pick.id)
        out.append(pick)
    return out


def replay(orderer, events, ordered):
    for event in ordered:
        events[event.id] = event
        orderer.process(event)


def test_chain_frames_and_decisions():
    recorder = Recorder()
    orderer, events = make_orderer({1: 1}, recorder)
    chain = build_chain(orderer, events, 6)
    assert [e.frame for e in chain] == list(range(1, 7))
    assert recorder.decided == [(i + 1, chain[i].id) for i in range(4)]
    assert orderer.store.last_decided_frame == 4


def test_roots_are_stored_per_frame():
    orderer, events = make_orderer({1: 1}, Recorder())
    chain = build_chain(orderer, events, 3)
    for event in chain:
        roots = orderer.store.frame_roots(event.frame)
        assert [r.id for r in roots] == [event.id]


def test_epoch_sealing():
    recorder = Recorder(seal_at=2, new_validators={1: 3})
    orderer, events = make_orderer({1: 1}, recorder)
    build_chain(orderer, events, 4)
    assert orderer.store.epoch == 2
    assert dict(orderer.store.validators) == {1: 3}
    assert orderer.store.last_decided_frame == 0
    assert recorder.loaded[-1] == 2
    assert orderer.store.frame_roots(1) == ()


def test_build_rejects_old_epoch_after_sealing():
    recorder = Recorder(seal_at=2, new_validators={1: 1})
    orderer, events = make_orderer({1: 1}, recorder)
    build_chain(orderer, events, 4)
    stale = FakeEvent(make_id(1, 9), 1, 1, 1, 9)
    with pytest.raises(ValueError):
        orderer.build(stale)


def test_build_rejects_unknown_creator():
    orderer, _ = make_orderer({1: 1}, Recorder())
    stranger = FakeEvent(make_id(7, 1), 7, 1, 1, 1)
    with pytest.raises(ValueError):
        orderer.build(stranger)


def test_process_rejects_wrong_frame():
    orderer, events = make_orderer({1: 1}, Recorder())
    first = emit(orderer, events, 1, 1, [], 1)
    second = FakeEvent(make_id(1, 2), 1, 2, 1, 2, [first.id], frame=7)
    events[second.id] = second
    with pytest.raises(WrongFrameError):
        orderer.process(second)


def test_suppressed_frame_check_stores_claimed_frames():
    orderer, events = make_orderer({1: 1}, Recorder(), config=Config(suppress_frame_panic=True))
    first = emit(orderer, events, 1, 1, [], 1)
    second = FakeEvent(make_id(1, 2), 1, 2, 1, 2, [first.id], frame=7)
    events[second.id] = second
    orderer.process(second)
    assert [r.id for r in orderer.store.frame_roots(7)] == [second.id]


def test_start_twice_raises():
    orderer, _ = make_orderer({1: 1}, Recorder())
    with pytest.raises(AlreadyBootstrappedError):
        orderer.start_from(OrdererCallbacks(), 1, {1: 1})
    with pytest.raises(AlreadyBootstrappedError):
        orderer.bootstrap(OrdererCallbacks())


def test_bootstrap_without_genesis():
    events = EventDB()
    orderer = Orderer(Store.in_memory(), events, AncestryIndex(events), lite_config())
    with pytest.raises(NoGenesisError):
        orderer.bootstrap(OrdererCallbacks())


def test_bootstrap_after_genesis():
    store = Store.in_memory()
    store.apply_genesis(Genesis(epoch=1, validators={1: 1}))
    events = EventDB()
    orderer = Orderer(store, events, AncestryIndex(events), lite_config())
    recorder = Recorder()
    orderer.bootstrap(recorder.callbacks())
    assert recorder.loaded == [1]
    first = emit(orderer, events, 1, 1, [], 1)
    assert first.frame == 1


def test_process_before_start_raises():
    events = EventDB()
    orderer = Orderer(Store.in_memory(), events, AncestryIndex(events), lite_config())
    with pytest.raises(RuntimeError):
        orderer.process(FakeEvent(make_id(1, 1), 1, 1, 1, 1, frame=1))


def test_reset_switches_epoch():
    recorder = Recorder()
    orderer, events = make_orderer({1: 1}, recorder)
    build_chain(orderer, events, 3)
    orderer.reset(5, {1: 1, 2: 1})
    assert orderer.store.epoch == 5
    assert orderer.store.last_decided_frame == 0
    assert orderer.store.frame_roots(1) == ()
    assert recorder.loaded[-1] == 5
    fresh = emit(orderer, events, 2, 1, [], 1)
    assert fresh.frame == 1


@pytest.mark.parametrize("validators", [{1: 1, 2: 1, 3: 1, 4: 1}, {1: 1, 2: 2, 3: 3, 4: 4}])
def test_same_decisions_in_any_topological_order(validators):
    gen_recorder = Recorder()
    generator, gen_events = make_orderer(validators, gen_recorder)
    ordered = round_robin(generator, gen_events, sorted(validators), 8)
    assert gen_recorder.decided

    replay_recorder = Recorder()
    other, other_events = make_orderer(validators, replay_recorder)
    replay(other, other_events, shuffled_topological(ordered, random.Random(3)))
    assert replay_recorder.decided == gen_recorder.decided
    assert other.store.last_decided_frame == generator.store.last_decided_frame


def test_restart_continues_consistently():
    validators = {1: 1, 2: 1, 3: 1, 4: 1}
    generator, gen_events = make_orderer(validators, Recorder())
    ordered = round_robin(generator, gen_events, sorted(validators), 8)

    reference_recorder = Recorder()
    reference, ref_events = make_orderer(validators, reference_recorder)
    replay(reference, ref_events, ordered)

    dbs = {}
    store = Store({}, lambda epoch: dbs.setdefault(epoch, {}), lite_store_config())
    first_recorder = Recorder()
    first, events = make_orderer(validators, first_recorder, store=store)
    half = len(ordered) // 2
    replay(first, events, ordered[:half])

    restored_recorder = Recorder()
    restored = Orderer(store, events, AncestryIndex(events), lite_config())
    restored.bootstrap(restored_recorder.callbacks())
    replay(restored, events, ordered[half:])

    assert first_recorder.decided + restored_recorder.decided == reference_recorder.decided
    assert restored.store.last_decided_frame == reference.store.last_decided_frame