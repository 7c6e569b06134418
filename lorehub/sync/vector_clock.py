"""Vector clocks for causal ordering of changes across devices.

Each device owns one counter. A clock A happened-before clock B when every
counter of A is less than or equal to the matching counter of B and at least
one is strictly less. Clocks where neither happened-before the other are
concurrent, which is how two independent edits to the same record are told
apart from one edit that simply followed another.
"""

import json
from enum import Enum
from typing import Iterator, Mapping


class ClockOrder(Enum):
    """Causal relation of one clock to another."""

    BEFORE = "before"  # strictly dominated by the other
    AFTER = "after"  # strictly dominates the other
    EQUAL = "equal"
    CONCURRENT = "concurrent"


class VectorClock(Mapping[str, int]):
    """Immutable-by-convention mapping of device id to counter.

    Missing devices read as 0, so ``{}`` is the clock of "nothing seen".
    """

    def __init__(self, counters: Mapping[str, int] | None = None):
        self._counters: dict[str, int] = {}
        for device_id, value in (counters or {}).items():
            value = int(value)
            if value < 0:
                raise ValueError(f"Negative counter for device {device_id}: {value}")
            if value:
                self._counters[device_id] = value

    def __getitem__(self, device_id: str) -> int:
        return self._counters.get(device_id, 0)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._counters

    def __iter__(self) -> Iterator[str]:
        return iter(self._counters)

    def __len__(self) -> int:
        return len(self._counters)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return self.compare(VectorClock(other)) is ClockOrder.EQUAL
        return NotImplemented

    def __hash__(self) -> int:
        return hash(tuple(sorted(self._counters.items())))

    def __repr__(self) -> str:
        return f"VectorClock({dict(sorted(self._counters.items()))})"

    def increment(self, device_id: str) -> "VectorClock":
        """Return a copy with ``device_id``'s counter advanced by one."""
        counters = dict(self._counters)
        counters[device_id] = counters.get(device_id, 0) + 1
        return VectorClock(counters)

    def merge(self, other: Mapping[str, int]) -> "VectorClock":
        """Return the pointwise maximum of both clocks."""
        counters = dict(self._counters)
        for device_id, value in other.items():
            if value > counters.get(device_id, 0):
                counters[device_id] = value
        return VectorClock(counters)

    def compare(self, other: Mapping[str, int]) -> ClockOrder:
        """Causal order of this clock relative to ``other``."""
        less = greater = False
        for device_id in set(self._counters) | set(other):
            mine = self[device_id]
            theirs = other.get(device_id, 0)
            if mine < theirs:
                less = True
            elif mine > theirs:
                greater = True
            if less and greater:
                return ClockOrder.CONCURRENT

        if less:
            return ClockOrder.BEFORE
        if greater:
            return ClockOrder.AFTER
        return ClockOrder.EQUAL

    def dominates(self, other: Mapping[str, int]) -> bool:
        """True when this clock is strictly ahead of ``other``."""
        return self.compare(other) is ClockOrder.AFTER

    def concurrent_with(self, other: Mapping[str, int]) -> bool:
        return self.compare(other) is ClockOrder.CONCURRENT

    def total(self) -> int:
        """Sum of all counters; strictly grows along any causal chain."""
        return sum(self._counters.values())

    def to_dict(self) -> dict[str, int]:
        return dict(sorted(self._counters.items()))

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, text: str | None) -> "VectorClock":
        if not text:
            return cls()
        return cls(json.loads(text))
