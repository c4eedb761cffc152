"""Terminal mode handling: cbreak input, hidden cursor, size lookup."""

from __future__ import annotations

import shutil
import sys
import termios
import tty
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TextIO

HIDE_CURSOR = "\033[?25l"
SHOW_CURSOR = "\033[?25h"
CLEAR_SCREEN = "\033[2J"
HOME = "\033[H"
RESET = "\033[0m"


def terminal_size() -> tuple[int, int]:
    """Return ``(columns, lines)``, falling back to 80x24."""
    size = shutil.get_terminal_size(fallback=(80, 24))
    return size.columns, size.lines


@contextmanager
def raw_terminal(
    stdin: TextIO | None = None, stdout: TextIO | None = None
) -> Iterator[int | None]:
    """Put the terminal in cbreak mode with the cursor hidden.

    Yields the input file descriptor, or *None* when stdin is not a tty (no
    keyboard commands then). Signals (Ctrl+C) keep working in cbreak mode.
    The original mode and cursor are restored on exit, whatever happened.
    """
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout

    fd: int | None = None
    saved: list[object] | None = None
    if stdin.isatty():
        fd = stdin.fileno()
        saved = termios.tcgetattr(fd)
        tty.setcbreak(fd)

    stdout.write(HIDE_CURSOR + CLEAR_SCREEN + HOME)
    stdout.flush()
    try:
        yield fd
    finally:
        stdout.write(RESET + SHOW_CURSOR + "\n")
        stdout.flush()
        if fd is not None and saved is not None:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
