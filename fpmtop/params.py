"""FastCGI request parameters (the CGI environment sent in PARAMS records).

Each entry is encoded as ``key length, value length, key, value`` with
single-byte lengths. Entries with a key or value longer than 255 bytes
cannot be expressed that way and are silently left out; the peer never
sees them.
"""

from __future__ import annotations

import struct
from typing import BinaryIO

MAX_LENGTH = 255


def _encode_entry(key: str, value: str) -> bytes | None:
    """Encode one entry, or return *None* if it does not fit."""
    k = key.encode("utf-8")
    v = value.encode("utf-8")
    if len(k) > MAX_LENGTH or len(v) > MAX_LENGTH:
        return None
    return struct.pack("!BB", len(k), len(v)) + k + v


class Params(dict[str, str]):
    """Key/value parameters for a single request."""

    def size(self) -> int:
        """Number of bytes :meth:`write` will emit."""
        total = 0
        for key, value in self.items():
            entry = _encode_entry(key, value)
            if entry is not None:
                total += len(entry)
        return total

    def write(self, stream: BinaryIO) -> None:
        """Write every encodable entry to *stream*, one entry per call."""
        for key, value in self.items():
            entry = _encode_entry(key, value)
            if entry is None:
                continue
            stream.write(entry)

    def encode(self) -> bytes:
        """The bytes :meth:`write` would emit, as one string."""
        return b"".join(
            entry
            for entry in (_encode_entry(k, v) for k, v in self.items())
            if entry is not None
        )
