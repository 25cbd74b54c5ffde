"""Priority queue that pops the highest priority first and reports moves."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

SetIndexCallback = Callable[[Any, int], None]

_MASK64 = (1 << 64) - 1
_SIGN64 = 1 << 63


def _wrap_int64(value: int) -> int:
    value &= _MASK64
    return value - (1 << 64) if value >= _SIGN64 else value


@dataclass
class _Item:
    value: Any
    priority: int


class Prque:
    """Max-priority queue.

    Priorities are 64-bit signed and compared with wrap-around: ``a`` comes
    before ``b`` when ``a - b`` (in int64 arithmetic) is positive. The optional
    ``set_index`` callback is told every element's new position, and ``-1``
    once it leaves the queue, so that elements can later be removed by index.
    """

    def __init__(self, set_index: Optional[SetIndexCallback] = None) -> None:
        self._set_index = set_index
        self._items: list[_Item] = []

    def push(self, data: Any, priority: int) -> None:
        """Insert a value with the given priority."""
        index = len(self._items)
        if self._set_index is not None:
            self._set_index(data, index)
        self._items.append(_Item(data, _wrap_int64(priority)))
        self._up(index)

    def pop(self) -> tuple[Any, int]:
        """Remove and return the value with the greatest priority and that priority."""
        if not self._items:
            raise IndexError("pop from an empty priority queue")
        last = len(self._items) - 1
        self._swap(0, last)
        self._down(0, last)
        item = self._pop_last()
        return item.value, item.priority

    def pop_item(self) -> Any:
        """Remove and return only the value with the greatest priority."""
        return self.pop()[0]

    def remove(self, i: int) -> Any:
        """Remove the element at heap position ``i`` and return its value."""
        if i < 0:
            return None
        last = len(self._items) - 1
        if i > last:
            raise IndexError(f"index {i} out of range")
        if i != last:
            self._swap(i, last)
            if not self._down(i, last):
                self._up(i)
        return self._pop_last().value

    def empty(self) -> bool:
        """Tell whether the queue holds no elements."""
        return not self._items

    def __len__(self) -> int:
        return len(self._items)

    def reset(self) -> None:
        """Drop every element, keeping the index callback."""
        self._items = []

    def _less(self, i: int, j: int) -> bool:
        return _wrap_int64(self._items[i].priority - self._items[j].priority) > 0

    def _swap(self, i: int, j: int) -> None:
        a, b = self._items[j], self._items[i]
        if self._set_index is not None:
            self._set_index(a.value, i)
            self._set_index(b.value, j)
        self._items[i], self._items[j] = a, b

    def _pop_last(self) -> _Item:
        item = self._items.pop()
        if self._set_index is not None:
            self._set_index(item.value, -1)
        return item

    def _up(self, j: int) -> None:
        while j > 0:
            parent = (j - 1) // 2
            if not self._less(j, parent):
                break
            self._swap(parent, j)
            j = parent

    def _down(self, start: int, n: int) -> bool:
        i = start
        while True:
            left = 2 * i + 1
            if left >= n:
                break
            child = left
            right = left + 1
            if right < n and self._less(right, left):
                child = right
            if not self._less(child, i):
                break
            self._swap(i, child)
            i = child
        return i > start