"""Data models and parser for the process manager's JSON status page."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from fpmtop.fastcgi import FetchError

# Worker states
RUNNING = "Running"
IDLE = "Idle"


class ParseError(FetchError):
    """The status output did not contain a usable JSON document."""


@dataclass
class WorkerProcess:
    """One worker as reported in the ``processes`` list."""

    pid: int = 0
    state: str = ""
    start_since: int = 0  # seconds
    requests: int = 0
    request_duration: int = 0  # microseconds, may be an overflow artefact
    request_method: str = ""
    request_uri: str = ""
    content_length: int = 0
    user: str = ""
    script: str = ""
    last_request_cpu: float = 0.0
    last_request_memory: int = 0  # bytes


@dataclass
class StatusSnapshot:
    """Pool-wide counters plus the worker list for one fetch."""

    pool: str = ""
    process_manager: str = ""
    start_time: int = 0
    start_since: int = 0
    accepted_conn: int = 0
    listen_queue: int = 0
    max_listen_queue: int = 0
    listen_queue_len: int = 0
    idle_processes: int = 0
    active_processes: int = 0
    total_processes: int = 0
    max_active_processes: int = 0
    max_children_reached: int = 0
    slow_requests: int = 0
    processes: list[WorkerProcess] = field(
        default_factory=lambda: list[WorkerProcess]()
    )


def _int(value: Any) -> int:
    """Coerce a JSON value to int; anything unusable becomes 0."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else 0
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            try:
                return _int(float(value))
            except ValueError:
                return 0
    return 0


def _float(value: Any) -> float:
    """Coerce a JSON value to float; unusable or out-of-range values become 0.0."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return float(value)
        except OverflowError:
            return 0.0
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _worker(doc: dict[str, Any]) -> WorkerProcess:
    return WorkerProcess(
        pid=_int(doc.get("pid")),
        state=_str(doc.get("state")),
        start_since=_int(doc.get("start since")),
        requests=_int(doc.get("requests")),
        request_duration=_int(doc.get("request duration")),
        request_method=_str(doc.get("request method")),
        request_uri=_str(doc.get("request uri")),
        content_length=_int(doc.get("content length")),
        user=_str(doc.get("user")),
        script=_str(doc.get("script")),
        last_request_cpu=_float(doc.get("last request cpu")),
        last_request_memory=_int(doc.get("last request memory")),
    )


def _snapshot(doc: dict[str, Any]) -> StatusSnapshot:
    workers = doc.get("processes")
    if workers is None:
        workers = []
    if not isinstance(workers, list):
        raise ParseError("Status document 'processes' is not a list")

    return StatusSnapshot(
        pool=_str(doc.get("pool")),
        process_manager=_str(doc.get("process manager")),
        start_time=_int(doc.get("start time")),
        start_since=_int(doc.get("start since")),
        accepted_conn=_int(doc.get("accepted conn")),
        listen_queue=_int(doc.get("listen queue")),
        max_listen_queue=_int(doc.get("max listen queue")),
        listen_queue_len=_int(doc.get("listen queue len")),
        idle_processes=_int(doc.get("idle processes")),
        active_processes=_int(doc.get("active processes")),
        total_processes=_int(doc.get("total processes")),
        max_active_processes=_int(doc.get("max active processes")),
        max_children_reached=_int(doc.get("max children reached")),
        slow_requests=_int(doc.get("slow requests")),
        processes=[_worker(w) for w in workers if isinstance(w, dict)],
    )


def parse_status(raw: bytes) -> StatusSnapshot:
    """Extract the status document from raw STDOUT output.

    The output starts with CGI headers (``Content-Type: ...``); the JSON
    document begins at the first ``{``. Integers decode with arbitrary
    precision, so overflowed durations survive intact.
    """
    start = raw.find(b"{")
    if start < 0:
        raise ParseError("No JSON document in status output")

    text = raw[start:].decode("utf-8", errors="replace")
    try:
        doc, _ = json.JSONDecoder().raw_decode(text)
    except ValueError as e:
        # Also covers integers past the interpreter's digit limit.
        raise ParseError(f"Malformed status document: {e}") from e
    if not isinstance(doc, dict):
        raise ParseError("Status document is not an object")

    try:
        return _snapshot(doc)
    except (ValueError, TypeError, OverflowError) as e:
        raise ParseError(f"Unusable status document: {e}") from e
