"""A matcher recognising PostgreSQL connections by their first message."""

from __future__ import annotations

import struct
from typing import BinaryIO, Optional

SSL_REQUEST_CODE = 80877103
CANCEL_REQUEST_CODE = 80877102
LEN_FIELD_SIZE = 4
MIN_MESSAGE_LEN = 8
MAX_PAYLOAD_SIZE = 16 * 1024

_SSL_REQUEST_PAYLOAD_LEN = 4
_CANCEL_REQUEST_PAYLOAD_LEN = 12
_SUPPORTED_MAJOR_VERSION = 3

_U32 = struct.Struct(">I")


def _read_full(stream: BinaryIO, size: int) -> Optional[bytes]:
    """Read exactly size bytes; None if the stream ends first."""
    chunks = []
    received = 0
    while received < size:
        chunk = stream.read(size - received)
        if not chunk:
            return None
        chunks.append(chunk)
        received += len(chunk)
    return b"".join(chunks)


def validate_startup_message_format(data: bytes) -> bool:
    """Tell whether data is a list of NUL-terminated key/value pairs ending with one NUL byte."""
    data = bytes(data)
    pos = 0
    while pos < len(data):
        key_end = data.find(b"\x00", pos)
        if key_end == -1:
            return False
        if key_end == pos:
            # An empty key ends the parameters and must be the last byte.
            return pos == len(data) - 1
        value_end = data.find(b"\x00", key_end + 1)
        if value_end == -1:
            return False
        pos = value_end + 1
    return False


class MatchPostgres:
    """Matches PostgreSQL SSLRequest, CancelRequest and protocol 3 StartupMessage."""

    def match(self, stream: BinaryIO) -> bool:
        """Tell whether the data read from stream looks like the PostgreSQL protocol.

        A stream that ends before a whole message arrives does not match.
        """
        length_bytes = _read_full(stream, LEN_FIELD_SIZE)
        if length_bytes is None:
            return False

        message_len = _U32.unpack(length_bytes)[0]
        if message_len < MIN_MESSAGE_LEN:
            return False

        payload_len = message_len - LEN_FIELD_SIZE
        if payload_len > MAX_PAYLOAD_SIZE or payload_len < 4:
            return False

        payload = _read_full(stream, payload_len)
        if payload is None:
            return False

        code = _U32.unpack(payload[:4])[0]
        if code == SSL_REQUEST_CODE:
            return len(payload) == _SSL_REQUEST_PAYLOAD_LEN
        if code == CANCEL_REQUEST_CODE:
            return len(payload) == _CANCEL_REQUEST_PAYLOAD_LEN
        if code >> 16 != _SUPPORTED_MAJOR_VERSION:
            return False
        return validate_startup_message_format(payload[4:])