"""Tests for fpmtop.monitor: the refresh loop, key reader and CLI."""

from __future__ import annotations

import io
import os
import queue
import signal
import tomllib
from collections.abc import Callable, Iterator
from functools import partial
from pathlib import Path

import pytest

from fpmtop.fastcgi import FCGI_STDERR, FCGI_STDOUT, ApplicationError, ConnectError, pack_header
from fpmtop.monitor import (
    DEFAULT_DELAY,
    DELAYS,
    KEY_COMMANDS,
    Command,
    KeyReader,
    LoopState,
    RefreshLoop,
    _install_signal_handlers,
    delay_index_for,
    fetch_snapshot,
    main,
)
from fpmtop.status import StatusSnapshot, WorkerProcess, parse_status

from conftest import FakeClock, StubPeer

SIZE = (120, 40)


def _snap(accepted: int, workers: list[WorkerProcess] | None = None) -> StatusSnapshot:
    return StatusSnapshot(pool="www", accepted_conn=accepted, processes=workers or [])


def _fetcher(*results: StatusSnapshot | Exception) -> Callable[[], StatusSnapshot]:
    pending: Iterator[StatusSnapshot | Exception] = iter(results)

    def fetch() -> StatusSnapshot:
        result = next(pending)
        if isinstance(result, Exception):
            raise result
        return result

    return fetch


def _loop(
    fetch: Callable[[], StatusSnapshot],
    clock: FakeClock,
    commands: queue.SimpleQueue[Command] | None = None,
    **kwargs: object,
) -> tuple[RefreshLoop, io.StringIO]:
    out = io.StringIO()
    loop = RefreshLoop(
        fetch,
        commands if commands is not None else queue.SimpleQueue(),
        out=out,
        clock=clock,
        size=lambda: SIZE,
        **kwargs,  # type: ignore[arg-type]
    )
    return loop, out


# ── Delay table ────────────────────────────────────────────────────────────


class TestDelayTable:
    def test_spans_tens_of_ms_to_a_day(self) -> None:
        assert DELAYS[0] <= 0.05
        assert DELAYS[-1] == 86400.0
        assert list(DELAYS) == sorted(DELAYS)

    @pytest.mark.parametrize(
        ("seconds", "index"),
        [(0.0, 0), (0.25, DELAYS.index(0.25)), (0.3, DELAYS.index(0.5)), (1e9, len(DELAYS) - 1)],
    )
    def test_delay_index_for(self, seconds: float, index: int) -> None:
        assert delay_index_for(seconds) == index


# ── Tick: rate, ranking, errors ────────────────────────────────────────────


class TestTick:
    def test_rate_from_two_samples(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(_snap(100), _snap(105)), clock)
        loop.tick()
        clock.advance(1.0)
        loop.tick()
        assert loop.rate == pytest.approx(5.0)
        assert loop.spark.values()[-2:] == [0.0, pytest.approx(5.0)]

    def test_rate_scales_with_elapsed(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(_snap(100), _snap(110)), clock)
        loop.tick()
        clock.advance(4.0)
        loop.tick()
        assert loop.rate == pytest.approx(2.5)

    def test_first_sample_rate_is_zero(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(_snap(5000)), clock)
        loop.tick()
        assert loop.rate == 0.0

    def test_initial_snapshot_is_baseline(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(_snap(130)), clock, last=_snap(100), last_time=clock() - 2.0)
        loop.tick()
        assert loop.rate == pytest.approx(15.0)

    def test_zero_elapsed_guarded(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(_snap(100), _snap(200)), clock)
        loop.tick()
        loop.tick()
        assert loop.rate == 0.0

    def test_counter_reset_clamps_to_zero(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(_snap(5000), _snap(3)), clock)
        loop.tick()
        clock.advance(1.0)
        loop.tick()
        assert loop.rate == 0.0

    def test_workers_rendered_in_rank_order(self, clock: FakeClock) -> None:
        workers = [
            WorkerProcess(pid=1111, state="Idle", request_duration=50),
            WorkerProcess(pid=2222, state="Running", request_duration=10),
            WorkerProcess(pid=3333, state="Running", request_duration=9_000_000_000),
        ]
        loop, out = _loop(_fetcher(_snap(1, workers)), clock)
        loop.tick()
        frame = out.getvalue()
        assert frame.index("2222") < frame.index("3333") < frame.index("1111")
        assert loop.state is LoopState.RENDERING

    def test_error_keeps_previous_snapshot(self, clock: FakeClock) -> None:
        first = _snap(100)
        loop, out = _loop(
            _fetcher(first, ApplicationError("Could not get '/status': boom")), clock
        )
        loop.tick()
        good_time = loop.last_time
        clock.advance(1.0)
        loop.tick()
        assert loop.last is first
        assert loop.last_time == good_time
        assert loop.state is LoopState.ERROR
        assert "Error:" in out.getvalue()
        assert "boom" in out.getvalue()

    def test_recovers_after_error(self, clock: FakeClock) -> None:
        loop, _ = _loop(
            _fetcher(_snap(100), ConnectError("refused"), _snap(104)), clock
        )
        loop.tick()
        clock.advance(1.0)
        loop.tick()
        clock.advance(1.0)
        loop.tick()
        # Rate spans both seconds since the last good sample.
        assert loop.rate == pytest.approx(2.0)

    @pytest.mark.parametrize(
        "raw",
        [
            b'{"pool":"www","processes":5}',
            b'{"processes":[{"pid":1,"request duration":' + b"9" * 5000 + b"}]}",
        ],
    )
    def test_unusable_document_shows_banner(self, clock: FakeClock, raw: bytes) -> None:
        loop, out = _loop(lambda: parse_status(raw), clock)
        loop.tick()
        assert loop.state is LoopState.ERROR
        assert loop.last is None
        assert "Error:" in out.getvalue()

    def test_huge_values_render(self, clock: FakeClock) -> None:
        huge = b"9" * 400
        raw = (
            b'{"pool":"www","accepted conn":' + huge + b',"processes":[{"pid":1,'
            b'"state":"Running","request duration":' + huge + b','
            b'"last request cpu":' + huge + b',"last request memory":' + huge + b"}]}"
        )
        loop, out = _loop(lambda: parse_status(raw), clock, last=_snap(1))
        clock.advance(1.0)
        loop.tick()
        assert loop.state is LoopState.RENDERING
        assert loop.rate == 0.0
        assert "www" in out.getvalue()

    def test_other_exceptions_propagate(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(RuntimeError("bug")), clock)
        with pytest.raises(RuntimeError):
            loop.tick()


class TestStubPeerEndToEnd:
    def test_stderr_peer_shows_banner(self, clock: FakeClock, stub_peer: Callable[[bytes], StubPeer]) -> None:
        message = b"Primary script unknown"
        peer = stub_peer(pack_header(FCGI_STDERR, len(message)) + message)
        previous = _snap(7)
        loop, out = _loop(
            partial(fetch_snapshot, peer.target, "/status", 2.0), clock, last=previous
        )
        loop.tick()
        assert loop.last is previous
        assert "Primary script unknown" in out.getvalue()

    def test_stdout_peer_renders_pool(self, clock: FakeClock, stub_peer: Callable[[bytes], StubPeer]) -> None:
        body = b'Content-Type: application/json\n\n{"pool":"www","accepted conn":42,"processes":[]}'
        peer = stub_peer(pack_header(FCGI_STDOUT, len(body)) + body)
        loop, out = _loop(partial(fetch_snapshot, peer.target, "/status", 2.0), clock)
        loop.tick()
        assert loop.last is not None
        assert loop.last.pool == "www"
        assert loop.last.accepted_conn == 42
        assert "www" in out.getvalue()


# ── Commands ───────────────────────────────────────────────────────────────


class TestHandle:
    def test_faster_and_slower(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(), clock)
        start = loop.delay_index
        assert loop.delay == DEFAULT_DELAY
        loop.handle(Command.FASTER)
        assert loop.delay_index == start - 1
        loop.handle(Command.SLOWER)
        loop.handle(Command.SLOWER)
        assert loop.delay_index == start + 1

    def test_bounds(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(), clock, delay_index=0)
        loop.handle(Command.FASTER)
        assert loop.delay_index == 0
        loop.delay_index = len(DELAYS) - 1
        loop.handle(Command.SLOWER)
        assert loop.delay_index == len(DELAYS) - 1

    @pytest.mark.parametrize("command", [Command.FASTER, Command.SLOWER, Command.REFRESH])
    def test_next_tick_immediate(self, clock: FakeClock, command: Command) -> None:
        loop, _ = _loop(_fetcher(), clock)
        loop._next_tick = clock() + 60
        loop.handle(command)
        assert loop._next_tick == clock()

    def test_refresh_keeps_delay(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(), clock)
        before = loop.delay_index
        loop.handle(Command.REFRESH)
        assert loop.delay_index == before

    def test_commands_leave_rate_timing_alone(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(_snap(1)), clock)
        loop.tick()
        stamp = loop.last_time
        loop.handle(Command.SLOWER)
        assert loop.last_time == stamp

    def test_quit(self, clock: FakeClock) -> None:
        loop, _ = _loop(_fetcher(), clock)
        loop.running = True
        loop.handle(Command.QUIT)
        assert loop.running is False
        assert loop.state is LoopState.SHUTDOWN


class TestRun:
    def test_commands_and_ticks_interleave(self, clock: FakeClock) -> None:
        commands: queue.SimpleQueue[Command] = queue.SimpleQueue()
        calls: list[int] = []

        def fetch() -> StatusSnapshot:
            calls.append(loop.delay_index)
            # Wake the loop instead of letting it sleep out the delay.
            commands.put(Command.REFRESH if len(calls) == 1 else Command.QUIT)
            return _snap(len(calls))

        loop, _ = _loop(fetch, clock, commands)
        commands.put(Command.SLOWER)
        start = loop.delay_index
        loop.run()

        assert calls == [start + 1, start + 1]
        assert loop.state is LoopState.SHUTDOWN

    def test_quit_before_first_tick(self, clock: FakeClock) -> None:
        commands: queue.SimpleQueue[Command] = queue.SimpleQueue()
        commands.put(Command.QUIT)
        loop, out = _loop(_fetcher(), clock, commands)
        loop.run()
        assert out.getvalue() == ""

    def test_error_then_continue(self, clock: FakeClock) -> None:
        commands: queue.SimpleQueue[Command] = queue.SimpleQueue()
        results: list[StatusSnapshot | Exception] = [ConnectError("down"), _snap(3)]

        def fetch() -> StatusSnapshot:
            result = results.pop(0)
            commands.put(Command.REFRESH if results else Command.QUIT)
            if isinstance(result, Exception):
                raise result
            return result

        loop, out = _loop(fetch, clock, commands)
        loop.run()
        assert results == []
        assert loop.last is not None and loop.last.accepted_conn == 3
        assert "down" in out.getvalue()

    @pytest.mark.parametrize("result", [_snap(1), ConnectError("down")])
    def test_next_tick_counts_from_cycle_start(
        self, clock: FakeClock, result: StatusSnapshot | Exception
    ) -> None:
        commands: queue.SimpleQueue[Command] = queue.SimpleQueue()
        started = clock()

        def fetch() -> StatusSnapshot:
            clock.advance(0.1)
            commands.put(Command.QUIT)
            if isinstance(result, Exception):
                raise result
            return result

        loop, _ = _loop(fetch, clock, commands)
        loop.run()
        assert loop._next_tick == pytest.approx(started + loop.delay)


# ── Key reader and signals ─────────────────────────────────────────────────


def test_key_commands() -> None:
    assert KEY_COMMANDS[b"q"] is Command.QUIT
    assert KEY_COMMANDS[b"+"] is Command.SLOWER
    assert KEY_COMMANDS[b"-"] is Command.FASTER
    assert KEY_COMMANDS[b"r"] is Command.REFRESH


def test_key_reader_translates_bytes() -> None:
    read_fd, write_fd = os.pipe()
    commands: queue.SimpleQueue[Command] = queue.SimpleQueue()
    reader = KeyReader(read_fd, commands, poll_rate=0.05)
    try:
        reader.start()
        os.write(write_fd, b"+x-q")
        received = [commands.get(timeout=2) for _ in range(3)]
        assert received == [Command.SLOWER, Command.FASTER, Command.QUIT]
    finally:
        os.close(write_fd)
        reader.stop()
        os.close(read_fd)
    assert not reader.is_running


def test_key_reader_stops_at_eof() -> None:
    read_fd, write_fd = os.pipe()
    reader = KeyReader(read_fd, queue.SimpleQueue(), poll_rate=0.05)
    reader.start()
    os.close(write_fd)
    reader.stop(timeout=2)
    os.close(read_fd)
    assert not reader.is_running


def test_signal_queues_quit() -> None:
    saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    commands: queue.SimpleQueue[Command] = queue.SimpleQueue()
    try:
        _install_signal_handlers(commands)
        os.kill(os.getpid(), signal.SIGTERM)
        assert commands.get(timeout=2) is Command.QUIT
    finally:
        for sig, handler in saved.items():
            signal.signal(sig, handler)


# ── CLI ────────────────────────────────────────────────────────────────────


def test_dump_config(capsys: pytest.CaptureFixture[str]) -> None:
    main(["--dump-config"])
    parsed = tomllib.loads(capsys.readouterr().out)
    assert parsed["default"]["status"] == "/status"


def test_unknown_profile_exits(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = tmp_path / "fpmtop.toml"
    cfg.write_text('[default]\nlisten = "127.0.0.1:9000"\n')
    with pytest.raises(SystemExit) as exc:
        main(["staging", "--config", str(cfg)])
    assert exc.value.code == 1
    assert "staging" in capsys.readouterr().err
