"""Refresh loop and command-line entry point for fpmtop.

The main thread owns all state. A key reader thread and the signal handlers
only ever put :class:`Command` values on a queue; the loop waits on that
queue with a timeout equal to the time left until the next refresh, so a
timer tick, a keypress and a signal all wake the same ``get()`` call.
"""

from __future__ import annotations

import argparse
import logging
import os
import queue
import select
import signal
import sys
import threading
import time
from collections.abc import Callable
from enum import Enum
from functools import partial
from pathlib import Path
from typing import TextIO

from fpmtop.config import dump_default_config, load_config, select_profile
from fpmtop.dashboard import render_dashboard, render_error
from fpmtop.fastcgi import DEFAULT_TIMEOUT, FetchError, fetch_status
from fpmtop.ranking import rank
from fpmtop.sparkline import SparkRing
from fpmtop.status import StatusSnapshot, parse_status
from fpmtop.terminal import raw_terminal, terminal_size

log = logging.getLogger(__name__)

# ── Delay table ────────────────────────────────────────────────────────────

DELAYS: tuple[float, ...] = (
    0.01, 0.025, 0.05, 0.1, 0.25, 0.5,
    1.0, 2.0, 5.0, 10.0, 30.0,
    60.0, 300.0, 900.0, 3600.0, 86400.0,
)
DEFAULT_DELAY = 0.25
SPARK_WIDTH = 70

# Below this many seconds between samples the rate is meaningless.
MIN_ELAPSED = 1e-6


def delay_index_for(seconds: float) -> int:
    """Index of the first table entry at or above *seconds*."""
    for i, delay in enumerate(DELAYS):
        if delay >= seconds:
            return i
    return len(DELAYS) - 1


# ── Commands ───────────────────────────────────────────────────────────────


class Command(Enum):
    FASTER = "faster"
    SLOWER = "slower"
    REFRESH = "refresh"
    QUIT = "quit"


KEY_COMMANDS: dict[bytes, Command] = {
    b"-": Command.FASTER,
    b"<": Command.FASTER,
    b"+": Command.SLOWER,
    b"=": Command.SLOWER,
    b">": Command.SLOWER,
    b"r": Command.REFRESH,
    b" ": Command.REFRESH,
    b"q": Command.QUIT,
    b"Q": Command.QUIT,
}


class LoopState(Enum):
    IDLE = "idle"
    AWAITING_TICK = "awaiting-tick"
    FETCHING = "fetching"
    RENDERING = "rendering"
    ERROR = "error-display"
    SHUTDOWN = "shutdown"


class KeyReader:
    """Reads single bytes from the terminal and queues the matching commands.

    Polls with ``select`` so :meth:`stop` takes effect within *poll_rate*.
    """

    def __init__(
        self,
        fd: int,
        commands: queue.SimpleQueue[Command],
        poll_rate: float = 0.1,
    ) -> None:
        self._fd = fd
        self._commands = commands
        self._poll_rate = poll_rate
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._read_loop,
            daemon=True,
            name="KeyReader",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 1.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _read_loop(self) -> None:
        while not self._stop_event.is_set():
            ready, _, _ = select.select([self._fd], [], [], self._poll_rate)
            if not ready:
                continue
            try:
                data = os.read(self._fd, 1)
            except OSError as e:
                log.info("keyboard input closed: %s", e)
                return
            if not data:
                log.info("keyboard input reached EOF")
                return
            command = KEY_COMMANDS.get(data)
            if command is not None:
                self._commands.put(command)


# ── Refresh loop ───────────────────────────────────────────────────────────


def fetch_snapshot(
    target: str, status_path: str, timeout: float = DEFAULT_TIMEOUT
) -> StatusSnapshot:
    return parse_status(fetch_status(target, status_path, timeout))


class RefreshLoop:
    """Drives fetch → rank → render on a user-adjustable cadence.

    Args:
        fetch: Returns a fresh snapshot or raises :class:`FetchError`.
        commands: Queue fed by the key reader and signal handlers.
        out: Where frames are written.
        last: Optional snapshot already fetched, used as the first rate baseline.
        last_time: Clock reading when *last* was taken (defaults to now).
        delay_index: Starting position in :data:`DELAYS`.
        clock: Monotonic time source.
        size: Returns the terminal ``(columns, lines)``.
    """

    def __init__(
        self,
        fetch: Callable[[], StatusSnapshot],
        commands: queue.SimpleQueue[Command],
        out: TextIO | None = None,
        last: StatusSnapshot | None = None,
        last_time: float | None = None,
        delay_index: int | None = None,
        spark_width: int = SPARK_WIDTH,
        clock: Callable[[], float] = time.monotonic,
        size: Callable[[], tuple[int, int]] = terminal_size,
    ) -> None:
        self._fetch = fetch
        self._commands = commands
        self._out = out or sys.stdout
        self._clock = clock
        self._size = size

        self.last = last
        self.last_time = last_time
        if last is not None and last_time is None:
            self.last_time = clock()
        self.delay_index = (
            delay_index_for(DEFAULT_DELAY) if delay_index is None else delay_index
        )
        self.spark = SparkRing(spark_width)
        self.rate = 0.0
        self.state = LoopState.IDLE
        self.running = False
        self._next_tick = 0.0

    @property
    def delay(self) -> float:
        return DELAYS[self.delay_index]

    def _write(self, frame: str) -> None:
        self._out.write(frame)
        self._out.flush()

    def _rate(self, snapshot: StatusSnapshot, now: float) -> float:
        """Accepted connections per second since the last good sample."""
        if self.last is None or self.last_time is None:
            return 0.0
        elapsed = now - self.last_time
        if elapsed < MIN_ELAPSED:
            return 0.0
        # A pool restart resets the counter.
        delta = max(0, snapshot.accepted_conn - self.last.accepted_conn)
        try:
            return delta / elapsed
        except OverflowError:
            log.warning("accepted conn jumped by %d digits, rate reset", len(str(delta)))
            return 0.0

    def handle(self, command: Command) -> None:
        """Apply one command; anything but QUIT makes the next tick immediate."""
        if command is Command.QUIT:
            log.info("quit requested")
            self.running = False
            self.state = LoopState.SHUTDOWN
            return

        if command is Command.FASTER and self.delay_index > 0:
            self.delay_index -= 1
            log.debug("delay now %.3fs", self.delay)
        elif command is Command.SLOWER and self.delay_index < len(DELAYS) - 1:
            self.delay_index += 1
            log.debug("delay now %.3fs", self.delay)
        self._next_tick = self._clock()

    def tick(self) -> None:
        """Run one fetch → rank → render cycle."""
        now = self._clock()
        self.state = LoopState.FETCHING
        try:
            snapshot = self._fetch()
        except FetchError as e:
            log.warning("refresh failed: %s", e)
            self.state = LoopState.ERROR
            self._write(render_error(str(e)))
            return

        self.state = LoopState.RENDERING
        self.rate = self._rate(snapshot, now)
        self.spark.push(self.rate)
        workers = rank(snapshot.processes)
        self._write(
            render_dashboard(
                snapshot, workers, self.spark, self.rate, self.delay, self._size()
            )
        )
        self.last = snapshot
        self.last_time = now

    def run(self) -> None:
        """Loop until a QUIT command arrives. The first tick fires at once."""
        self.running = True
        self._next_tick = self._clock()
        while self.running:
            self.state = LoopState.AWAITING_TICK
            timeout = max(0.0, self._next_tick - self._clock())
            try:
                command = self._commands.get(timeout=timeout)
            except queue.Empty:
                started = self._clock()
                self.tick()
                # Schedule from the start of the cycle so fetch time doesn't drift it.
                self._next_tick = started + self.delay
                continue
            self.handle(command)


# ── CLI entry point ────────────────────────────────────────────────────────


def _configure_logging(log_level: str, log_file: str | None) -> None:
    """Log to *log_file* only; stdout belongs to the dashboard."""
    handlers: list[logging.Handler] = [logging.NullHandler()]
    if log_file:
        handlers = [logging.FileHandler(os.path.expanduser(log_file), encoding="utf-8")]
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def _install_signal_handlers(commands: queue.SimpleQueue[Command]) -> None:
    def _on_signal(signum: int, frame: object) -> None:
        # SimpleQueue.put is reentrant, safe to call from a signal handler.
        commands.put(Command.QUIT)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _on_signal)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Live top-style view of a PHP-FPM pool's status page.",
    )
    parser.add_argument(
        "profile",
        nargs="?",
        default="default",
        help="Profile (table) from the config file to watch (default: default)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help="Path to TOML config file (default: ~/.fpmtop.toml)",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=None,
        help="Initial seconds between refreshes (default: from the profile)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        metavar="PATH",
        help="Write log messages to this file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for --log-file (default: INFO)",
    )
    parser.add_argument(
        "--dump-config",
        action="store_true",
        help="Print the default configuration and exit",
    )
    args = parser.parse_args(argv)

    if args.dump_config:
        print(dump_default_config(), end="")
        return

    _configure_logging(args.log_level, args.log_file)
    profile = select_profile(load_config(args.config), args.profile)
    delay = args.delay if args.delay is not None else profile.delay
    log.info("watching %s%s (profile %s)", profile.listen, profile.status, profile.name)

    commands: queue.SimpleQueue[Command] = queue.SimpleQueue()
    _install_signal_handlers(commands)
    loop = RefreshLoop(
        partial(fetch_snapshot, profile.listen, profile.status, profile.timeout),
        commands,
        delay_index=delay_index_for(delay),
    )

    with raw_terminal() as fd:
        reader = KeyReader(fd, commands) if fd is not None else None
        if reader is not None:
            reader.start()
        try:
            loop.run()
        finally:
            if reader is not None:
                reader.stop()


if __name__ == "__main__":
    main()
