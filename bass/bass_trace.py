"""
A fixed-capacity ring buffer of evaluation frames.
"""
from typing import Any, List, Optional

DEFAULT_CAPACITY = 100


class Frame:
    """One annotated form the evaluator descended into."""
    __slots__ = ("form", "range", "seq")

    def __init__(self, form: Any, range: Any, seq: int):
        self.form = form
        self.range = range
        self.seq = seq

    def __repr__(self):
        return f"Frame({self.range})"


class Trace:
    """Keeps the last `capacity` frames pushed by the evaluator.

    `record` writes at `depth % capacity` and bumps the depth; `pop` only
    lowers the depth so the slots keep their frames for error reporting.
    `frames()` returns what is in the buffer oldest first.
    """
    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("trace capacity must be positive")
        self.capacity = capacity
        self.slots: List[Optional[Frame]] = [None] * capacity
        self.depth = 0
        self._seq = 0

    def record(self, form: Any, range: Any = None):
        self._seq += 1
        self.slots[self.depth % self.capacity] = Frame(form, range, self._seq)
        self.depth += 1

    def pop(self, n: int = 1):
        self.depth = max(0, self.depth - n)

    def is_empty(self) -> bool:
        return all(slot is None for slot in self.slots)

    def frames(self) -> List[Frame]:
        present = [slot for slot in self.slots if slot is not None]
        present.sort(key=lambda f: f.seq)
        return present

    def stack(self) -> List[Frame]:
        """The frames still live at the current depth, outermost first."""
        live = min(self.depth, self.capacity)
        out = []
        for i in range(self.depth - live, self.depth):
            slot = self.slots[i % self.capacity]
            if slot is not None:
                out.append(slot)
        return out

    def reset(self):
        self.slots = [None] * self.capacity
        self.depth = 0

    def fork(self) -> 'Trace':
        """A fresh, empty trace for a concurrent worker."""
        return Trace(self.capacity)

    def __repr__(self):
        return f"<Trace depth={self.depth} capacity={self.capacity}>"
