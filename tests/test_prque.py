import random

import pytest

from lachesisbft.prque import Prque


def _filled(priorities, set_index=None):
    queue = Prque(set_index)
    for n, priority in enumerate(priorities):
        queue.push(f"v{n}", priority)
    return queue


def test_pops_in_descending_priority_order():
    rng = random.Random(7)
    priorities = [rng.randrange(-10_000, 10_000) for _ in range(500)]
    queue = _filled(priorities)
    popped = [queue.pop()[1] for _ in range(len(priorities))]
    assert popped == sorted(priorities, reverse=True)
    assert queue.empty()


def test_pop_returns_value_and_priority():
    queue = Prque()
    queue.push("only", 42)
    assert queue.pop() == ("only", 42)


def test_pop_item_drops_priority():
    queue = Prque()
    queue.push("low", 1)
    queue.push("high", 2)
    assert queue.pop_item() == "high"
    assert queue.pop_item() == "low"


def test_len_and_empty_follow_contents():
    queue = _filled([3, 1, 2])
    assert len(queue) == 3
    assert not queue.empty()
    queue.pop()
    assert len(queue) == 2


def test_pop_from_empty_raises():
    with pytest.raises(IndexError):
        Prque().pop()


def test_set_index_tracks_positions():
    positions = {}

    def track(value, index):
        positions[value] = index

    rng = random.Random(3)
    queue = Prque(track)
    values = [f"v{n}" for n in range(100)]
    for value in values:
        queue.push(value, rng.randrange(1000))
    assert sorted(positions.values()) == list(range(len(values)))

    victim = values[37]
    assert queue.remove(positions[victim]) == victim
    assert positions[victim] == -1
    assert len(queue) == len(values) - 1

    remaining = set()
    while not queue.empty():
        value = queue.pop_item()
        remaining.add(value)
        assert positions[value] == -1
    assert remaining == set(values) - {victim}


def test_remove_keeps_heap_order():
    positions = {}
    rng = random.Random(11)
    priorities = {f"v{n}": rng.randrange(-500, 500) for n in range(200)}
    queue = Prque(lambda value, index: positions.__setitem__(value, index))
    for value, priority in priorities.items():
        queue.push(value, priority)
    removed = {queue.remove(positions[value]) for value in list(priorities)[::3]}
    kept = [p for v, p in priorities.items() if v not in removed]
    popped = [queue.pop()[1] for _ in range(len(queue))]
    assert popped == sorted(kept, reverse=True)


def test_remove_negative_index_is_a_no_op():
    queue = _filled([1, 2])
    assert queue.remove(-1) is None
    assert len(queue) == 2


def test_remove_out_of_range_raises():
    queue = _filled([1, 2])
    with pytest.raises(IndexError):
        queue.remove(2)


def test_reset_clears_and_keeps_callback():
    calls = []
    queue = _filled([1, 2, 3], lambda value, index: calls.append((value, index)))
    queue.reset()
    assert queue.empty()
    calls.clear()
    queue.push("again", 5)
    assert calls == [("again", 0)]
    assert queue.pop() == ("again", 5)


def test_priorities_wrap_around():
    lowest = -(2**63)
    highest = 2**63 - 1
    queue = Prque()
    queue.push("low", lowest)
    queue.push("high", highest)
    assert queue.pop() == ("low", lowest)
    assert queue.pop() == ("high", highest)