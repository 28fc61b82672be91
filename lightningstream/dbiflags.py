"""LMDB DBI flag bitmask with parsing from and formatting to readable names."""

from __future__ import annotations

import re

_MAX_VALUE = 0xFFFF

# (bit, C constant name, friendly name), in ascending bit order.
_KNOWN_FLAGS: tuple[tuple[int, str, str], ...] = (
    (0x02, "MDB_REVERSEKEY", "ReverseKey"),
    (0x04, "MDB_DUPSORT", "DupSort"),
    (0x08, "MDB_INTEGERKEY", "IntegerKey"),
    (0x10, "MDB_DUPFIXED", "DupFixed"),
    (0x20, "MDB_INTEGERDUP", "IntegerDup"),
    (0x40, "MDB_REVERSEDUP", "ReverseDup"),
)

# MDB_CREATE is deliberately absent: it is not a persistent DBI flag.
_NAME_TO_BIT = {name: bit for bit, name, _ in _KNOWN_FLAGS}

ALL_VALID = 0
for _bit, _name, _friendly in _KNOWN_FLAGS:
    ALL_VALID |= _bit

_HEX_RE = re.compile(r"[0-9A-F]+")
_DEC_RE = re.compile(r"[0-9]+")


class Flags(int):
    """A 16-bit bitmask of persistent LMDB DBI flags.

    ``str()`` gives ``|``-separated C constant names, e.g.
    ``MDB_INTEGERKEY|MDB_INTEGERDUP``; unknown bits are shown as
    ``UNKNOWN:0x...``.
    """

    def __new__(cls, value: int = 0) -> "Flags":
        value = int(value)
        if not 0 <= value <= _MAX_VALUE:
            raise ValueError(f"DBI flags out of 16-bit range: {value:#x}")
        return super().__new__(cls, value)

    def __str__(self) -> str:
        return self._build("|", friendly=False)

    def __repr__(self) -> str:
        return f"Flags({int(self):#x})"

    def __format__(self, spec: str) -> str:
        if spec and spec[-1] in "bcdoxXn":
            return int.__format__(int(self), spec)
        return format(str(self), spec)

    def __or__(self, other: int) -> "Flags":
        return Flags(int(self) | int(other))

    __ror__ = __or__

    def __and__(self, other: int) -> "Flags":
        return Flags(int(self) & int(other))

    __rand__ = __and__

    def __xor__(self, other: int) -> "Flags":
        return Flags(int(self) ^ int(other))

    __rxor__ = __xor__

    def friendly_string(self) -> str:
        """Space-separated friendly names, e.g. ``IntegerKey IntegerDup``."""
        return self._build(" ", friendly=True)

    def _build(self, sep: str, friendly: bool) -> str:
        rest = int(self)
        parts = []
        for bit, name, friendly_name in _KNOWN_FLAGS:
            if rest & bit:
                parts.append(friendly_name if friendly else name)
                rest &= ~bit
        if rest:
            parts.append(f"UNKNOWN:0x{rest:x}")
        return sep.join(parts)


REVERSE_KEY = Flags(0x02)
DUP_SORT = Flags(0x04)
INTEGER_KEY = Flags(0x08)
DUP_FIXED = Flags(0x10)
INTEGER_DUP = Flags(0x20)
REVERSE_DUP = Flags(0x40)


def _parse_number(token: str) -> int:
    if token.startswith("0X"):
        digits, base, pattern = token[2:], 16, _HEX_RE
    else:
        digits, base, pattern = token, 10, _DEC_RE
    if not pattern.fullmatch(digits):
        raise ValueError(f"invalid persistent DBI flag: {token}")
    value = int(digits, base)
    if value > _MAX_VALUE or value & ALL_VALID != value:
        raise ValueError(f"invalid persistent DBI flag: {token}")
    return value


def parse_flags(text: str | bytes) -> Flags:
    """Parse flag names or numbers separated by ``|``, ``,``, ``+`` or spaces.

    Names are case-insensitive and the ``MDB_`` prefix is optional. Numbers
    may be decimal or ``0x`` hexadecimal, but may only contain known
    persistent flags. Raises ValueError on anything else.
    """
    if isinstance(text, bytes):
        text = text.decode()
    for sep in (",", "+", " "):
        text = text.replace(sep, "|")
    value = 0
    for part in text.split("|"):
        token = part.strip().upper()
        if not token:
            continue
        if token in _NAME_TO_BIT:
            value |= _NAME_TO_BIT[token]
        elif "MDB_" + token in _NAME_TO_BIT:
            value |= _NAME_TO_BIT["MDB_" + token]
        else:
            value |= _parse_number(token)
    return Flags(value)