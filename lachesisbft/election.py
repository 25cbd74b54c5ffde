"""Atropos election: deciding which root of a frame becomes the checkpoint.

Validators are given as a mapping of validator id to weight. Validators are
ordered by weight, heaviest first, and by id among equal weights. Event ids
are ``bytes``.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Protocol, Sequence

from .byteorder import uint32_to_bytes

ZERO_EVENT = bytes(32)

ForklessCauseFn = Callable[[bytes, bytes], bool]
GetFrameRootsFn = Callable[[int], Sequence["RootAndSlot"]]


class Seq(Protocol):
    """Highest known sequence number of one validator."""

    @property
    def seq(self) -> int: ...

    def is_fork_detected(self) -> bool: ...


class HighestBeforeSeq(Protocol):
    """Per-validator view of an event's ancestors."""

    def __len__(self) -> int: ...

    def get(self, i: int) -> Seq: ...


class ForklessCause(Protocol):
    """Tells whether event ``a_id`` is forkless caused by event ``b_id``."""

    def forkless_cause(self, a_id: bytes, b_id: bytes) -> bool: ...


class VectorClock(Protocol):
    """Gives the merged highest-before vector of an event."""

    def get_merged_highest_before(self, event_id: bytes) -> HighestBeforeSeq: ...


class ElectionError(Exception):
    """The election reached a state possible only with more than 1/3W Byzantine."""


@dataclass(frozen=True, order=True)
class Slot:
    """A root slot. Honest validators have one root per slot; forks may share one."""

    frame: int
    validator: int


@dataclass(frozen=True, order=True)
class RootAndSlot:
    """A concrete root occupying a slot."""

    id: bytes
    slot: Slot


@dataclass(frozen=True)
class Res:
    """The decided frame and its Atropos."""

    frame: int
    atropos: bytes


@dataclass(frozen=True)
class _Vote:
    decided: bool = False
    yes: bool = False
    observed_root: Optional[bytes] = None


class _WeightCounter:
    def __init__(self, weights: Mapping[int, int], quorum: int) -> None:
        self._weights = weights
        self._quorum = quorum
        self._seen: set[int] = set()
        self.sum = 0

    def count(self, validator: int) -> bool:
        if validator in self._seen:
            return False
        self._seen.add(validator)
        self.sum += self._weights[validator]
        return True

    def has_quorum(self) -> bool:
        return self.sum >= self._quorum


def _format_id(event_id: bytes) -> str:
    return event_id.hex() if isinstance(event_id, (bytes, bytearray)) else str(event_id)


class Election:
    """State of the election of one frame's Atropos."""

    def __init__(
        self,
        validators: Mapping[int, int],
        frame_to_decide: int,
        forkless_cause: ForklessCauseFn,
        get_frame_roots: GetFrameRootsFn,
    ) -> None:
        self._observe = forkless_cause
        self._get_frame_roots = get_frame_roots
        self.reset(validators, frame_to_decide)

    @property
    def frame_to_decide(self) -> int:
        return self._frame_to_decide

    def reset(self, validators: Mapping[int, int], frame_to_decide: int) -> None:
        """Erase the election state and prepare to decide ``frame_to_decide``."""
        self._validators = dict(validators)
        self._sorted_ids = sorted(self._validators, key=lambda v: (-self._validators[v], v))
        self._quorum = sum(self._validators.values()) * 2 // 3 + 1
        self._frame_to_decide = frame_to_decide
        self._votes: dict[tuple[RootAndSlot, int], _Vote] = {}
        self._decided: dict[int, _Vote] = {}

    def _counter(self) -> _WeightCounter:
        return _WeightCounter(self._validators, self._quorum)

    def _not_decided_roots(self) -> list[int]:
        pending = [v for v in self._sorted_ids if v not in self._decided]
        if len(pending) + len(self._decided) != len(self._validators):
            raise RuntimeError("mismatch of roots")
        return pending

    def _observed_roots(self, root: bytes, frame: int) -> list[RootAndSlot]:
        return [r for r in self._get_frame_roots(frame) if self._observe(root, r.id)]

    def _observed_roots_map(self, root: bytes, frame: int) -> dict[int, RootAndSlot]:
        return {r.slot.validator: r for r in self._observed_roots(root, frame)}

    def process_root(self, new_root: RootAndSlot) -> Optional[Res]:
        """Compute the new root's votes; return the result once the election is decided."""
        res = self._choose_atropos()
        if res is not None:
            return res

        if new_root.slot.frame <= self._frame_to_decide:
            # too old root, out of interest for the current election
            return None
        round_ = new_root.slot.frame - self._frame_to_decide

        not_decided = self._not_decided_roots()
        prev_frame = new_root.slot.frame - 1
        if round_ == 1:
            observed_map = self._observed_roots_map(new_root.id, prev_frame)
            observed: list[RootAndSlot] = []
        else:
            observed_map = {}
            observed = self._observed_roots(new_root.id, prev_frame)

        for subject in not_decided:
            if round_ == 1:
                # in the initial round, vote "yes" if the subject is observed
                root = observed_map.get(subject)
                vote = _Vote(decided=False, yes=root is not None,
                             observed_root=root.id if root is not None else None)
            else:
                vote = self._vote_by_majority(subject, observed)
                if vote.decided:
                    self._decided[subject] = vote
            self._votes[(new_root, subject)] = vote

        return self._choose_atropos()

    def _vote_by_majority(self, subject: int, observed: list[RootAndSlot]) -> _Vote:
        yes_votes, no_votes, all_votes = self._counter(), self._counter(), self._counter()
        subject_hash: Optional[bytes] = None
        for root in observed:
            prev = self._votes.get((root, subject))
            if prev is None:
                raise ElectionError(
                    "every root must vote for every not decided subject. "
                    "possibly roots are processed out of order"
                )
            if prev.yes and subject_hash is not None and subject_hash != prev.observed_root:
                raise ElectionError(
                    "forkless caused by 2 fork roots => more than 1/3W are Byzantine "
                    f"({_format_id(subject_hash)} != {_format_id(prev.observed_root)}, "
                    f"election frame={self._frame_to_decide}, validator={subject})"
                )
            if prev.yes:
                subject_hash = prev.observed_root
                yes_votes.count(root.slot.validator)
            else:
                no_votes.count(root.slot.validator)
            if not all_votes.count(root.slot.validator):
                raise ElectionError(
                    "forkless caused by 2 fork roots => more than 1/3W are Byzantine "
                    f"(election frame={self._frame_to_decide}, validator={subject})"
                )
        if not all_votes.has_quorum():
            raise ElectionError(
                "root must be forkless caused by at least 2/3W of prev roots. "
                "possibly roots are processed out of order"
            )

        yes = yes_votes.sum >= no_votes.sum
        # A supermajority makes the decision final unless more than 1/3W are Byzantine.
        return _Vote(
            decided=yes_votes.has_quorum() or no_votes.has_quorum(),
            yes=yes,
            observed_root=subject_hash if yes else None,
        )

    def _choose_atropos(self) -> Optional[Res]:
        # The first decided "yes" root in validator order is the Atropos.
        for validator in self._sorted_ids:
            vote = self._decided.get(validator)
            if vote is None:
                return None
            if vote.yes:
                return Res(frame=self._frame_to_decide, atropos=vote.observed_root or ZERO_EVENT)
        raise ElectionError(
            "all the roots are decided as 'no', which is possible only if more than 1/3W are Byzantine"
        )

    def debug_state_hash(self) -> bytes:
        """SHA-256 digest of the election state, for comparing elections in tests."""
        hasher = hashlib.sha256()
        for root, subject in sorted(self._votes, key=lambda k: (k[0].slot, k[0].id, k[1])):
            vote = self._votes[(root, subject)]
            hasher.update(root.id)
            hasher.update(uint32_to_bytes(root.slot.frame))
            hasher.update(uint32_to_bytes(root.slot.validator))
            hasher.update(vote.observed_root or ZERO_EVENT)
        for validator in sorted(self._decided):
            hasher.update(uint32_to_bytes(validator))
            hasher.update(self._decided[validator].observed_root or ZERO_EVENT)
        return hasher.digest()

    def describe(self, voters: Optional[Sequence[RootAndSlot]] = None) -> str:
        """Human-readable summary of the votes of ``voters`` (all voting roots if None)."""
        if voters is None:
            voters = list(dict.fromkeys(root for root, _ in self._votes))
        lines = [
            "Every line contains votes from a root, for each subject. y is yes, n is no. "
            "Upper case means 'decided'. '-' means that subject was already decided when root was processed."
        ]
        for root in voters:
            marks = []
            for subject in self._sorted_ids:
                vote = self._votes.get((root, subject))
                if vote is None:
                    marks.append("-")
                    continue
                mark = "y" if vote.yes else "n"
                marks.append(mark.upper() if vote.decided else mark)
            lines.append(f"{_format_id(root.id)}-{root.slot.frame}: {''.join(marks)}")
        return "\n".join(lines) + "\n"