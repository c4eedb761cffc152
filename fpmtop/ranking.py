"""Display order for the worker table.

Running workers first, then the slowest requests. Durations above
``OVERFLOW_THRESHOLD`` come from a known upstream 32-bit overflow and are
not real; they sink below every plausible duration instead of floating to
the top.
"""

from __future__ import annotations

from collections.abc import Iterable

from fpmtop.status import RUNNING, WorkerProcess

# Microseconds. Heuristic for the overflow artefact, not a protocol limit.
OVERFLOW_THRESHOLD = 2_000_000_000


def is_corrupted(duration: int) -> bool:
    return duration > OVERFLOW_THRESHOLD


def sort_key(worker: WorkerProcess) -> tuple[bool, bool, int]:
    """Ascending sort key.

    Non-Running states are not distinguished from each other; those
    workers are ordered by duration alone.
    """
    corrupted = is_corrupted(worker.request_duration)
    return (
        worker.state != RUNNING,
        corrupted,
        0 if corrupted else -worker.request_duration,
    )


def rank(workers: Iterable[WorkerProcess]) -> list[WorkerProcess]:
    """Return a new list of *workers* in display order."""
    return sorted(workers, key=sort_key)
