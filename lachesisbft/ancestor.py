"""Parent selection for event emission: search strategies and metric indexers.

Event ids are ``bytes``. Events are duck-typed: they expose ``id``,
``creator``, ``frame``, ``parents`` (a sequence of ids) and ``self_parent``
(an id or None). Validators are a mapping of validator id to weight, ordered
by weight, heaviest first, and by id among equal weights.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from cachetools import LRUCache

from .election import ZERO_EVENT

MAX_FRAMES_TO_INDEX = 500

MetricFn = Callable[[list[bytes]], int]


class SearchStrategy(Protocol):
    """Criterion for picking the best next parent among options."""

    def choose(self, existing: Sequence[bytes], options: Sequence[bytes]) -> int: ...


class _ProgressCounter(Protocol):
    num_counted: int


class DagIndex(Protocol):
    """Reports how far one event's knowledge of another has progressed."""

    def forkless_cause_progress(
        self,
        a_id: bytes,
        b_id: bytes,
        candidate_parents: Optional[Sequence[bytes]],
        chosen_parents: Optional[Sequence[bytes]],
    ) -> tuple[_ProgressCounter, list[Any]]: ...


def choose_parents(
    existing_parents: Sequence[bytes],
    options: Sequence[bytes],
    strategies: Sequence[SearchStrategy],
) -> list[bytes]:
    """Extend ``existing_parents`` with one option chosen by each strategy in turn.

    Stops early once the options run out; the result holds at most
    ``len(existing_parents) + len(strategies)`` ids.
    """
    remaining = dict.fromkeys(options)
    parents = list(existing_parents)
    for parent in parents:
        remaining.pop(parent, None)

    for strategy in strategies:
        if not remaining:
            break
        current = list(remaining)
        best = current[strategy.choose(list(parents), current)]
        parents.append(best)
        del remaining[best]
    return parents


class MetricStrategy:
    """Chooses the option that maximises a metric of the resulting parent set."""

    def __init__(self, metric_fn: MetricFn) -> None:
        self._metric_fn = metric_fn

    def choose(self, existing: Sequence[bytes], options: Sequence[bytes]) -> int:
        best_index = 0
        best_metric = 0
        for i, option in enumerate(options):
            metric = self._metric_fn([*existing, option])
            if best_metric == 0 or metric > best_metric:
                best_index = i
                best_metric = metric
        return best_index


class RandomStrategy:
    """Chooses an option at random; useful when no vector clock is available."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng if rng is not None else random.Random()

    def choose(self, existing: Sequence[bytes], options: Sequence[bytes]) -> int:
        return self._rng.randrange(len(options))


class PayloadIndexer:
    """Tracks, per event, the heaviest payload chain leading up to it."""

    def __init__(self, cache_size: int) -> None:
        if cache_size <= 0:
            raise ValueError("cache size must be positive")
        self._payload_metrics: LRUCache = LRUCache(maxsize=cache_size)

    def process_event(self, event: Any, payload_metric: int) -> None:
        """Record the event's metric: its own payload plus the best of its parents."""
        parents_metric = self.get_metric_of(event.parents)
        if parents_metric != 0 or payload_metric != 0:
            self._payload_metrics[event.id] = parents_metric + payload_metric

    def get_metric_of(self, ids: Sequence[bytes]) -> int:
        """The greatest metric among ``ids``; unknown ids count as zero."""
        return max((self._payload_metrics.get(event_id, 0) for event_id in ids), default=0)

    def search_strategy(self) -> MetricStrategy:
        return MetricStrategy(self.get_metric_of)


@dataclass(frozen=True)
class _HighestEvent:
    id: bytes = ZERO_EVENT
    frame: int = 0


class FCIndexer:
    """Indexes recent frame roots to measure how widely they are known."""

    def __init__(self, validators: Mapping[int, int], dag_index: DagIndex, me: int) -> None:
        self._dag_index = dag_index
        self._validators = dict(validators)
        sorted_ids = sorted(self._validators, key=lambda v: (-self._validators[v], v))
        self._index = {validator: i for i, validator in enumerate(sorted_ids)}
        self.me = me
        self._prev_self_event = ZERO_EVENT
        self._prev_self_frame = 0
        self.top_frame = 0
        self.frame_roots: dict[int, list[bytes]] = {}
        self._highest_events: dict[int, _HighestEvent] = {}
        self._search_strategy = MetricStrategy(self.get_metric_of)

    def process_event(self, event: Any) -> None:
        """Take a connected event into the index."""
        if event.creator == self.me:
            self._prev_self_event = event.id
            self._prev_self_frame = event.frame
        self_parent = self._highest_events.get(event.creator, _HighestEvent())
        self._highest_events[event.creator] = _HighestEvent(event.id, event.frame)

        if self.top_frame < event.frame:
            self.top_frame = event.frame
            # frames grow by one at a time, so dropping a single frame is enough
            self.frame_roots.pop(self.top_frame - MAX_FRAMES_TO_INDEX, None)

        if self_parent.frame == 0 and event.self_parent is not None:
            return
        for frame in range(self_parent.frame + 1, event.frame + 1):
            if frame + MAX_FRAMES_TO_INDEX <= self.top_frame:
                continue
            roots = self.frame_roots.get(frame)
            if roots is None:
                roots = [ZERO_EVENT] * len(self._validators)
                self.frame_roots[frame] = roots
            roots[self._index[event.creator]] = event.id

    def _root_progress(
        self, frame: int, event: bytes, chosen_heads: Optional[Sequence[bytes]]
    ) -> int:
        # Counts non-zero entries of the matrix "root i is known by validator j"
        # within the subgraph of the event.
        roots = self.frame_roots.get(frame)
        if roots is None:
            return 0
        total = 0
        for root in roots:
            if root == ZERO_EVENT:
                continue
            progress, _ = self._dag_index.forkless_cause_progress(event, root, None, chosen_heads)
            total += progress.num_counted
        return total

    def _greater(self, a_id: bytes, a_frame: int, b_k: int, b_frame: int) -> bool:
        if a_frame != b_frame:
            return a_frame > b_frame
        return self._root_progress(b_frame, a_id, None) >= b_k

    def validators_past_me(self) -> int:
        """Total weight of validators whose knowledge exceeds that of my previous event.

        A node should typically wait with emitting until this reaches a quorum.
        """
        self_frame = self._prev_self_frame
        k_prev = self._root_progress(self_frame, self._prev_self_event, None)
        return sum(
            self._validators[creator]
            for creator, highest in self._highest_events.items()
            if self._greater(highest.id, highest.frame, k_prev, self_frame)
        )

    def get_metric_of(self, ids: Sequence[bytes]) -> int:
        """Root knowledge at the top frame of ``ids[0]`` with ``ids[1:]`` as chosen heads."""
        if self.top_frame == 0:
            return 0
        return self._root_progress(self.top_frame, ids[0], list(ids[1:]))

    def search_strategy(self) -> MetricStrategy:
        return self._search_strategy