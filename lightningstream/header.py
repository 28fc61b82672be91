"""Encoding and decoding of the header that prefixes native schema values.

Layout (big endian)::

    0..8    timestamp (nanoseconds since the UNIX epoch)
    8..16   LMDB transaction ID
    16      header version (always 0)
    17      flags
    18..22  reserved
    22..24  number of extra 8-byte blocks
    24..    extra blocks, then the application value
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

MIN_HEADER_SIZE = 24
BLOCK_SIZE = 8

VERSION_OFFSET = 16
FLAGS_OFFSET = 17
NUM_EXTRA_OFFSET = 22

_LAYOUT = struct.Struct(">QQBB4xH")
_UINT64 = struct.Struct(">Q")
_UINT16 = struct.Struct(">H")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class HeaderError(ValueError):
    """A value cannot be interpreted as carrying a header."""


class TooShortError(HeaderError):
    """The value is too short to contain a header."""

    def __init__(self, message: str = "value too short to contain a header"):
        super().__init__(message)


class VersionError(HeaderError):
    """The header version is unsupported, or this is not a header."""

    def __init__(self, message: str = "unsupported header version or not a header"):
        super().__init__(message)


class HeaderFlags(enum.IntFlag):
    """Flags stored in the header."""

    NONE = 0
    DELETED = 1

    def is_deleted(self) -> bool:
        return bool(self & HeaderFlags.DELETED)

    def masked(self) -> "HeaderFlags":
        """Only the flags that may be synced to or from a snapshot."""
        return HeaderFlags(self & FLAG_SYNC_MASK)


FLAG_SYNC_MASK = HeaderFlags.DELETED


@dataclass
class Header:
    """A decoded value header."""

    timestamp: int = 0
    txn_id: int = 0
    version: int = 0
    flags: HeaderFlags = HeaderFlags.NONE
    num_extra: int = 0
    extra: bytes = b""

    def to_bytes(self) -> bytes:
        """Encode the header; ``num_extra`` grows to fit ``extra`` if needed."""
        extra = bytes(self.extra)
        n = self.num_extra
        if n < 0:
            raise ValueError(f"negative number of extra blocks: {n}")
        if len(extra) > n * BLOCK_SIZE:
            n = -(-len(extra) // BLOCK_SIZE)
        buf = bytearray(MIN_HEADER_SIZE + n * BLOCK_SIZE)
        _LAYOUT.pack_into(
            buf, 0, self.timestamp, self.txn_id, self.version, int(self.flags), n
        )
        buf[MIN_HEADER_SIZE:MIN_HEADER_SIZE + len(extra)] = extra
        return bytes(buf)

    __bytes__ = to_bytes


def _value_offset(val: bytes) -> tuple[int, int]:
    """Validate ``val`` and return (number of extra blocks, value offset)."""
    if len(val) < MIN_HEADER_SIZE:
        raise TooShortError()
    if val[VERSION_OFFSET] != 0:
        raise VersionError()
    (num_extra,) = _UINT16.unpack_from(val, NUM_EXTRA_OFFSET)
    offset = MIN_HEADER_SIZE + num_extra * BLOCK_SIZE
    if len(val) < offset:
        raise TooShortError()
    return num_extra, offset


def parse(val: bytes) -> tuple[Header, bytes]:
    """Parse a value with header; return the header and the application value."""
    num_extra, offset = _value_offset(val)
    timestamp, txn_id, version, flags, _ = _LAYOUT.unpack_from(val, 0)
    header = Header(
        timestamp=timestamp,
        txn_id=txn_id,
        version=version,
        flags=HeaderFlags(flags),
        num_extra=num_extra,
        extra=bytes(val[MIN_HEADER_SIZE:offset]),
    )
    return header, bytes(val[offset:])


def skip(val: bytes) -> bytes:
    """Skip over the header and return the application value."""
    _, offset = _value_offset(val)
    return bytes(val[offset:])


def parse_timestamp(val: bytes) -> int:
    """Read the timestamp from the first 8 bytes of a value."""
    if len(val) < 8:
        raise TooShortError()
    return _UINT64.unpack_from(val, 0)[0]


def put_basic(buf: bytearray | memoryview, ts: int, txnid: int, flags: int) -> None:
    """Write a basic 24-byte header into the start of a writable buffer."""
    if len(buf) < MIN_HEADER_SIZE:
        raise TooShortError("buffer too short to hold a header")
    _LAYOUT.pack_into(buf, 0, ts, txnid, 0, int(flags), 0)


def timestamp_from_datetime(dt: datetime) -> int:
    """Nanoseconds since the UNIX epoch; naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - _EPOCH
    seconds = delta.days * 86400 + delta.seconds
    return seconds * 1_000_000_000 + delta.microseconds * 1000


def timestamp_to_datetime(ts: int) -> datetime:
    """UTC datetime for a timestamp, truncated to microsecond precision."""
    return _EPOCH + timedelta(microseconds=ts // 1000)