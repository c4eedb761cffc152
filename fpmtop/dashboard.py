"""Text rendering for the fpmtop screen.

Everything here returns strings; writing them to the terminal is the
caller's job. Each frame redraws from the home position and clears to the
end of every line, so a frame never needs a full screen clear.
"""

from __future__ import annotations

from fpmtop.sparkline import SparkRing
from fpmtop.status import IDLE, RUNNING, StatusSnapshot, WorkerProcess
from fpmtop.terminal import CLEAR_SCREEN, HOME, RESET

# ── ANSI helpers ───────────────────────────────────────────────────────────

BOLD = "\033[1m"
RED = "\033[31m"
YELLOW = "\033[33m"
GREEN = "\033[32m"
BG_RED = "\033[41m"
BG_GREEN = "\033[42m"
BG_MAGENTA = "\033[45m"
TABLE_HEADER = "\033[0;37;44m"
CLEAR_EOL = "\033[K"
CLEAR_BELOW = "\033[J"

# Request durations (microseconds) that get highlighted.
SLOW_US = 500_000
VERY_SLOW_US = 1_000_000

# Lines above the worker table: two summary lines, sparkline, column header.
HEADER_LINES = 4


def _value(v: object) -> str:
    return f"{GREEN}{v}{RESET}"


def duration_color(duration_us: int) -> str:
    """Escalating highlight: yellow past 500ms, red past one second."""
    if duration_us > VERY_SLOW_US:
        return RED
    if duration_us > SLOW_US:
        return YELLOW
    return ""


def state_block(state: str) -> str:
    """One coloured cell identifying the worker state."""
    if state == RUNNING:
        return f"{BG_MAGENTA} {RESET}"
    if state == IDLE:
        return f"{BG_GREEN} {RESET}"
    return f"{BG_RED} {RESET}"


# ── Formatting helpers ─────────────────────────────────────────────────────


def fmt_bytes(n: int | float) -> str:
    """Human-readable byte count (binary prefixes)."""
    try:
        v = float(n)
    except OverflowError:
        v = float("inf")
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(v) < 1024:
            return f"{v:.1f} {unit}"
        v /= 1024
    return f"{v:.1f} TiB"


def fmt_seconds(seconds: int) -> str:
    """Compact uptime: ``45s``, ``5m 12s``, ``2h 30m``, ``3d 4h``."""
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86400)
    hrs, rem = divmod(rem, 3600)
    mins, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hrs}h"
    if hrs:
        return f"{hrs}h {mins}m"
    if mins:
        return f"{mins}m {secs}s"
    return f"{secs}s"


def fmt_duration(seconds: float) -> str:
    """Short duration with a unit suited to its size: ``250ms``, ``1.5s``."""
    if seconds < 0.001:
        return f"{seconds * 1_000_000:.0f}µs"
    if seconds < 1:
        return f"{seconds * 1000:.4g}ms"
    if seconds < 60:
        return f"{seconds:.4g}s"
    return fmt_seconds(int(seconds))


def fmt_request_duration(duration_us: int) -> str:
    """Format a microsecond count; integer math keeps huge values renderable."""
    duration_us = max(0, duration_us)
    if duration_us >= 60_000_000:
        return fmt_seconds(duration_us // 1_000_000)
    return fmt_duration(duration_us / 1_000_000)


# ── Screen sections ────────────────────────────────────────────────────────


def summary_lines(snapshot: StatusSnapshot, rate: float, delay: float) -> list[str]:
    pool_line = (
        f"PHP-FPM Pool: {_value(snapshot.pool)}   "
        f"Uptime: {_value(fmt_seconds(snapshot.start_since))}   "
        f"Manager: {_value(snapshot.process_manager)}   "
        f"Accepted Connections: {_value(snapshot.accepted_conn)}"
    )
    load_line = (
        f"Active/Total: {GREEN}{snapshot.active_processes:4d}{RESET}"
        f"/{GREEN}{snapshot.total_processes:<4d}{RESET}   "
        f"Queue: {_value(snapshot.listen_queue)}   "
        f"Request per Second: {_value(f'{rate:.1f}')}   "
        f"Delay: {_value(fmt_duration(delay))}"
    )
    return [pool_line, load_line]


def column_header(columns: int) -> str:
    hdr = (
        f" {'PID':>7s} {'Uptime':>10s} {'State':>15s} {'Mem':>10s} "
        f"{'Duration':>10s} {'Method':>7s} URI"
    )
    return f"{TABLE_HEADER}{hdr[:columns].ljust(columns)}{RESET}"


def worker_row(worker: WorkerProcess, columns: int) -> str:
    """One table row; Running rows are bold, slow requests coloured."""
    text = (
        f"{worker.pid:>7d} {fmt_seconds(worker.start_since):>10s} "
        f"{worker.state:>15s} {fmt_bytes(worker.last_request_memory):>10s} "
        f"{fmt_request_duration(worker.request_duration):>10s} "
        f"{worker.request_method:>7s} {worker.request_uri}"
    )
    style = BOLD if worker.state == RUNNING else ""
    style += duration_color(worker.request_duration)
    return f"{state_block(worker.state)}{style}{text[: max(0, columns - 1)]}{CLEAR_EOL}{RESET}"


def render_dashboard(
    snapshot: StatusSnapshot,
    workers: list[WorkerProcess],
    spark: SparkRing,
    rate: float,
    delay: float,
    size: tuple[int, int],
) -> str:
    """Build a full frame for an already ranked worker list.

    Rows beyond the terminal height are dropped. The last row is not
    followed by a newline so a full screen never scrolls.
    """
    columns, lines = size
    out = [HOME]
    for line in summary_lines(snapshot, rate, delay):
        out.append(f"{line}{CLEAR_EOL}\n")
    out.append(f"{spark.render()}{CLEAR_EOL}\n")
    out.append(column_header(columns))

    room = max(0, lines - HEADER_LINES)
    for worker in workers[:room]:
        out.append("\n" + worker_row(worker, columns))

    out.append(CLEAR_BELOW)
    return "".join(out)


def render_error(message: str) -> str:
    return f"{HOME}{CLEAR_SCREEN}{RED}Error:{RESET} {message}{CLEAR_EOL}"
