"""Strategies for writing a stream of snapshot or delta entries into an LMDB.

A strategy consumes an :class:`Iterator` that yields keys in turn and
merges values, and applies the result to a database inside a write
transaction. :func:`pick` chooses a suitable strategy.
"""

from __future__ import annotations

import abc
import contextlib
import struct
import sys
from dataclasses import dataclass
from typing import Any, Callable, Generator, NamedTuple

import lmdb

_IS_LITTLE_ENDIAN = sys.byteorder == "little"

_LE_UINT = {2: struct.Struct("<H"), 4: struct.Struct("<I"), 8: struct.Struct("<Q")}


class NotSortedError(ValueError):
    """Keys were not in sorted order while the strategy requires it."""

    def __init__(self, message: str = "keys not sorted"):
        super().__init__(message)


class Iterator(abc.ABC):
    """Source of the entries a strategy writes.

    The iterator walks over snapshots and deltas and is responsible for
    serialising and merging values.
    """

    @abc.abstractmethod
    def next(self) -> bytes | None:
        """Advance to the next key and return it, or None when exhausted."""

    @abc.abstractmethod
    def merge(self, oldval: bytes | None) -> bytes | None:
        """Merge the existing value for the current key with the new one.

        Returns None (never an empty value) if nothing is left.
        """

    @abc.abstractmethod
    def clean(self, oldval: bytes | None) -> bytes | None:
        """Remove everything that belongs to the current snapshot from a value.

        Returns None (never an empty value) if nothing is left.
        """


Strategy = Callable[[lmdb.Transaction, Any, Iterator], None]


@dataclass
class Facts:
    """What is known about the target database when picking a strategy."""

    is_empty: bool = False


def cmp_integer_little_endian(a: bytes, b: bytes) -> int:
    """Compare two keys as little endian unsigned integers."""
    ai = _bytes_to_int(a)
    bi = _bytes_to_int(b)
    return (ai > bi) - (ai < bi)


def _bytes_to_int(b: bytes) -> int:
    layout = _LE_UINT.get(len(b))
    if layout is None:
        return 0
    return layout.unpack(b)[0]


def _cmp_bytes(a: bytes, b: bytes) -> int:
    return (a > b) - (a < b)


def _append(txn: lmdb.Transaction, db: Any, key: bytes, val: bytes) -> None:
    if not txn.put(key, val, db=db, append=True):
        raise lmdb.Error(f"append: key {key!r} is not past the end of the database")


def _is_integer_key(txn: lmdb.Transaction, db: Any) -> bool:
    if db is None:
        return False
    return bool(db.flags(txn).get("integerkey", False))


def _set_new_val(
    txn: lmdb.Transaction, db: Any, key: bytes, old: bytes | None, new: bytes | None
) -> None:
    """Store ``new`` if it changed; delete the key if ``new`` is empty."""
    if not new:
        txn.delete(key, db=db)
        return
    if new == old:
        return
    txn.put(key, new, db=db)


def append(txn: lmdb.Transaction, db: Any, it: Iterator) -> None:
    """Append every entry at the end of the database.

    The fastest way to fill a database. Requires an empty database and
    sorted input; raises NotSortedError otherwise.
    """
    prev_key = b""
    while (key := it.next()) is not None:
        key = bytes(key)
        if prev_key >= key:
            raise NotSortedError()
        prev_key = key
        val = it.merge(None)
        if not val:
            continue
        _append(txn, db, key, bytes(val))


def _do_put(txn: lmdb.Transaction, db: Any, it: Iterator, is_empty: bool) -> None:
    while (key := it.next()) is not None:
        key = bytes(key)
        val = it.merge(None)
        if not val:
            # An empty value means the key must go, unless there is nothing to remove.
            if not is_empty:
                txn.delete(key, db=db)
            continue
        txn.put(key, bytes(val), db=db)


def put(txn: lmdb.Transaction, db: Any, it: Iterator) -> None:
    """Put every entry, overwriting existing ones. Input need not be sorted."""
    _do_put(txn, db, it, False)


def empty_put(txn: lmdb.Transaction, db: Any, it: Iterator) -> None:
    """Empty the database (keeping it), then put every entry."""
    txn.drop(db, delete=False)
    _do_put(txn, db, it, True)


def update(txn: lmdb.Transaction, db: Any, it: Iterator) -> None:
    """Merge every entry with the existing value. Input need not be sorted."""
    while (key := it.next()) is not None:
        key = bytes(key)
        dbv = txn.get(key, db=db)
        if dbv is not None:
            dbv = bytes(dbv)
        val = it.merge(dbv)
        _set_new_val(txn, db, key, dbv, val)


class _Step(NamedTuple):
    """One step of walking the iterator and the database side by side.

    Carries the key of the side that is behind, or both keys if equal.
    """

    it_key: bytes | None
    db_key: bytes | None
    db_val: bytes | None
    it_eof: bool
    db_eof: bool


def _advance(cursor: lmdb.Cursor, last_key: bytes | None) -> bool:
    """Position the cursor on the first key after ``last_key``."""
    if last_key is None:
        return cursor.first()
    if not cursor.set_range(last_key):
        return False
    if bytes(cursor.key()) == last_key:
        return cursor.next()
    return True


def _iter_both(
    it: Iterator, txn: lmdb.Transaction, db: Any, integer_key: bool
) -> Generator[_Step, None, None]:
    """Walk the iterator and the database in key order at the same time.

    The database may be modified between steps: the cursor is positioned
    again after the last database key seen each time it is needed.
    """
    cmp = cmp_integer_little_endian if integer_key and _IS_LITTLE_ENDIAN else _cmp_bytes
    it_eof = db_eof = False
    it_key: bytes | None = None
    db_key: bytes | None = None
    db_val: bytes | None = None
    prev_key = b""
    last_db_key: bytes | None = None

    with txn.cursor(db) as cursor:
        while True:
            if it_key is None and not it_eof:
                next_key = it.next()
                if next_key is None:
                    it_eof = True
                else:
                    it_key = bytes(next_key)
                    if cmp(prev_key, it_key) >= 0:
                        raise NotSortedError(f"{it_key!r}: keys not sorted")
                    prev_key = it_key

            if db_key is None and not db_eof:
                if _advance(cursor, last_db_key):
                    db_key = bytes(cursor.key())
                    db_val = bytes(cursor.value())
                    last_db_key = db_key
                else:
                    db_eof = True

            if it_eof and db_eof:
                return
            if it_eof:
                yield _Step(None, db_key, db_val, True, False)
                db_key = None
                continue
            if db_eof:
                yield _Step(it_key, None, None, False, True)
                it_key = None
                continue

            c = cmp(db_key, it_key)
            if c < 0:
                yield _Step(None, db_key, db_val, False, False)
                db_key = None
            elif c == 0:
                yield _Step(it_key, db_key, db_val, False, False)
                db_key = None
                it_key = None
            else:
                yield _Step(it_key, None, None, False, False)
                it_key = None


def iter_put(txn: lmdb.Transaction, db: Any, it: Iterator) -> None:
    """Make the database hold exactly the iterator's entries.

    New keys are added, changed values replaced and keys missing from the
    iterator removed; past the end of the database entries are appended.
    Requires sorted input.
    """
    steps = _iter_both(it, txn, db, _is_integer_key(txn, db))
    with contextlib.closing(steps):
        for step in steps:
            if step.it_eof or step.it_key is None:
                txn.delete(step.db_key, db=db)
                continue
            val = bytes(it.merge(None) or b"")
            if step.db_eof:
                _append(txn, db, step.it_key, val)
            elif step.db_key is None or val != step.db_val:
                txn.put(step.it_key, val, db=db)


def iter_update(txn: lmdb.Transaction, db: Any, it: Iterator) -> None:
    """Merge the iterator's entries into the database.

    Keys absent from the iterator are cleaned of the current snapshot's
    data and removed if nothing remains. Requires sorted input.
    """
    steps = _iter_both(it, txn, db, _is_integer_key(txn, db))
    with contextlib.closing(steps):
        for step in steps:
            if step.it_eof or step.it_key is None:
                val = it.clean(step.db_val)
                if not val:
                    txn.delete(step.db_key, db=db)
                elif val != step.db_val:
                    txn.put(step.db_key, bytes(val), db=db)
                continue

            val = it.merge(None)
            if step.db_eof:
                if val:
                    _append(txn, db, step.it_key, bytes(val))
                continue
            if step.db_key is None:
                if val:
                    txn.put(step.it_key, bytes(val), db=db)
                continue

            val = it.merge(step.db_val)
            _set_new_val(txn, db, step.it_key, step.db_val, val)


def pick(facts: Facts) -> Strategy:
    """Pick the best strategy for the given facts."""
    if facts.is_empty:
        return append
    # Snapshot load into a non-empty database; keeps file growth minimal.
    return iter_put