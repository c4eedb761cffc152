"""Just enough of a FastCGI client to GET a status page.

One request per connection, request id 1, responder role. The response is
read frame by frame until the peer closes the stream; STDOUT and STDERR
payloads are collected separately and everything else is ignored.
"""

from __future__ import annotations

import logging
import socket
import struct
from dataclasses import dataclass
from typing import BinaryIO

from fpmtop.params import Params

log = logging.getLogger(__name__)

# ── Protocol constants ─────────────────────────────────────────────────────

FCGI_VERSION_1 = 1

FCGI_BEGIN_REQUEST = 1
FCGI_ABORT_REQUEST = 2
FCGI_END_REQUEST = 3
FCGI_PARAMS = 4
FCGI_STDIN = 5
FCGI_STDOUT = 6
FCGI_STDERR = 7

FCGI_RESPONDER = 1

FCGI_HEADER_LEN = 8
FCGI_MAX_CONTENT_LEN = 65535

REQUEST_ID = 1
STATUS_QUERY = "json&full"
DEFAULT_TIMEOUT = 5.0

_HEADER = struct.Struct("!BBHHBB")
_BEGIN_REQUEST_BODY = struct.Struct("!HB5x")


# ── Errors ─────────────────────────────────────────────────────────────────


class FetchError(Exception):
    """Base class for everything that can go wrong fetching a status page."""


class ConnectError(FetchError):
    """The transport could not be opened or failed mid-exchange."""


class DecodeError(FetchError):
    """A frame from the peer was short or malformed."""


class ApplicationError(FetchError):
    """The peer wrote to STDERR; the message is the peer's text."""


# ── Framing ────────────────────────────────────────────────────────────────


@dataclass
class Frame:
    type: int
    request_id: int
    content: bytes


def pack_header(record_type: int, content_length: int, padding_length: int = 0) -> bytes:
    """Pack the 8-byte record header for request 1."""
    if not 0 <= content_length <= FCGI_MAX_CONTENT_LEN:
        raise ValueError(f"content length out of range: {content_length}")
    return _HEADER.pack(
        FCGI_VERSION_1, record_type, REQUEST_ID, content_length, padding_length, 0
    )


def begin_request_frame() -> bytes:
    """BEGIN_REQUEST record asking for the responder role, connection closed after."""
    body = _BEGIN_REQUEST_BODY.pack(FCGI_RESPONDER, 0)
    return pack_header(FCGI_BEGIN_REQUEST, len(body)) + body


def params_frame(params: Params) -> bytes:
    """One PARAMS record carrying every encodable entry of *params*."""
    return pack_header(FCGI_PARAMS, params.size()) + params.encode()


def _read_exact(stream: BinaryIO, n: int, what: str) -> bytes:
    data = stream.read(n)
    if data is None or len(data) != n:
        got = 0 if data is None else len(data)
        raise DecodeError(f"Short read on {what}. Got {got}, expected {n}")
    return data


def read_frame(stream: BinaryIO) -> Frame | None:
    """Read one frame including its padding.

    Returns *None* on a clean end-of-stream before the header.
    """
    header = stream.read(FCGI_HEADER_LEN)
    if not header:
        return None
    if len(header) != FCGI_HEADER_LEN:
        raise DecodeError(
            f"Short read on header. Got {len(header)}, expected {FCGI_HEADER_LEN}"
        )
    _version, record_type, request_id, content_length, padding_length, _ = (
        _HEADER.unpack(header)
    )

    content = b""
    if content_length > 0:
        content = _read_exact(stream, content_length, "content")
    if padding_length > 0:
        _read_exact(stream, padding_length, "padding")

    return Frame(type=record_type, request_id=request_id, content=content)


# ── Transport ──────────────────────────────────────────────────────────────


def parse_target(target: str) -> tuple[int, str | tuple[str, int]]:
    """Return ``(address family, address)`` for a listen target.

    Targets starting with ``/`` are Unix socket paths, anything else is
    ``host:port`` (IPv6 hosts in brackets).
    """
    if target.startswith("/"):
        return socket.AF_UNIX, target

    host, sep, port = target.rpartition(":")
    if not sep or not host:
        raise ConnectError(f"Invalid listen address '{target}': expected host:port")
    host = host.strip("[]")
    try:
        port_num = int(port)
    except ValueError:
        raise ConnectError(f"Invalid port in listen address '{target}'") from None
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return family, (host, port_num)


def _connect(target: str, timeout: float) -> socket.socket:
    family, address = parse_target(target)
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(address)
    except OSError as e:
        sock.close()
        raise ConnectError(f"Could not connect to '{target}': {e}") from e
    return sock


# ── Request ────────────────────────────────────────────────────────────────


def build_request(status_path: str) -> bytes:
    params = Params()
    params["SCRIPT_NAME"] = status_path
    params["SCRIPT_FILENAME"] = status_path
    params["REQUEST_METHOD"] = "GET"
    params["QUERY_STRING"] = STATUS_QUERY

    return b"".join(
        [
            begin_request_frame(),
            params_frame(params),
            pack_header(FCGI_PARAMS, 0),
            pack_header(FCGI_STDIN, 0),
        ]
    )


def fetch_status(target: str, status_path: str, timeout: float = DEFAULT_TIMEOUT) -> bytes:
    """GET *status_path* from the FastCGI peer at *target*.

    Returns the concatenated STDOUT payload (headers and body, as the peer
    wrote them).

    Raises:
        ConnectError: The peer is unreachable or the connection failed.
        DecodeError: A frame was truncated.
        ApplicationError: The peer wrote to STDERR.
    """
    stdout = bytearray()
    stderr = bytearray()

    with _connect(target, timeout) as sock:
        try:
            sock.sendall(build_request(status_path))
            with sock.makefile("rb") as stream:
                while True:
                    frame = read_frame(stream)
                    if frame is None:
                        break
                    if frame.type == FCGI_STDOUT:
                        stdout += frame.content
                    elif frame.type == FCGI_STDERR:
                        stderr += frame.content
                    else:
                        log.debug("ignoring record type %d", frame.type)
        except OSError as e:
            raise ConnectError(f"Connection to '{target}' failed: {e}") from e

    if stderr:
        message = bytes(stderr).decode("utf-8", errors="replace").strip()
        raise ApplicationError(f"Could not get '{status_path}': {message}")

    return bytes(stdout)
