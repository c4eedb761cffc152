"""Fixed-size ring of samples rendered as a one-line sparkline."""

from __future__ import annotations

import math

SPARK = " ▁▂▃▄▅▆▇█"


class SparkRing:
    """Circular buffer of the last *capacity* samples.

    The cursor always points at the slot the next :meth:`push` overwrites,
    which is also the oldest sample once the ring has wrapped.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._ring: list[float] = [0.0] * capacity
        self._cursor = 0

    def __len__(self) -> int:
        return len(self._ring)

    def push(self, value: float) -> None:
        self._ring[self._cursor] = float(value)
        self._cursor = (self._cursor + 1) % len(self._ring)

    def max(self) -> float:
        """Largest sample; never below zero since empty slots hold 0."""
        highest = 0.0
        for value in self._ring:
            if value > highest:
                highest = value
        return highest

    def values(self) -> list[float]:
        """Samples ordered oldest to newest."""
        return self._ring[self._cursor:] + self._ring[: self._cursor]

    def render(self) -> str:
        highest = self.max()
        if highest <= 0:
            return SPARK[0] * len(self._ring)

        top = len(SPARK) - 1
        chars: list[str] = []
        for value in self.values():
            # value / (highest / 9), without the step underflowing to zero
            level = math.floor(value * len(SPARK) / highest - 0.5)
            chars.append(SPARK[max(0, min(level, top))])
        return "".join(chars)
