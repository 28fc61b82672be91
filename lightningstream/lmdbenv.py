"""Utilities for opening and inspecting LMDB environments."""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from dataclasses import dataclass, field, replace
from typing import Any, Iterator

import lmdb

DEFAULT_DIR_MASK = 0o775
DEFAULT_FILE_MASK = 0o664
DEFAULT_MAP_SIZE = 1 << 30  # 1 GB
DEFAULT_MAX_DBS = 64

_TEMP_DBI_NAME = b"tempdbi"


@dataclass
class Options:
    """Options for :func:`open_env`; zero values mean "use the default".

    ``lmdb_kwargs`` holds extra keyword arguments passed straight to
    ``lmdb.open``; it is deliberately not exposed in config files.
    """

    dir_mask: int = 0
    file_mask: int = 0
    map_size: int = 0
    max_dbs: int = 0
    no_subdir: bool = False
    create: bool = False
    lmdb_kwargs: dict[str, Any] = field(default_factory=dict)

    def with_defaults(self) -> "Options":
        """Return a copy with defaults filled in for unset values."""
        return replace(
            self,
            dir_mask=self.dir_mask or DEFAULT_DIR_MASK,
            file_mask=self.file_mask or DEFAULT_FILE_MASK,
            max_dbs=self.max_dbs or DEFAULT_MAX_DBS,
            lmdb_kwargs=dict(self.lmdb_kwargs),
        )


def open_env(path: str | os.PathLike, options: Options | None = None) -> lmdb.Environment:
    """Open an LMDB environment at ``path``. The caller must close it.

    The map size only defaults to 1 GB when ``create`` is set; otherwise a
    zero map size lets LMDB take the size from the existing file.
    """
    opt = (options or Options()).with_defaults()
    path = os.fspath(path)

    if opt.create:
        dir_path = os.path.dirname(path) if opt.no_subdir else path
        if dir_path:
            os.makedirs(dir_path, mode=opt.dir_mask, exist_ok=True)

    map_size = opt.map_size
    if map_size == 0 and opt.create:
        map_size = DEFAULT_MAP_SIZE

    return lmdb.open(
        path,
        map_size=map_size,
        subdir=not opt.no_subdir,
        max_dbs=opt.max_dbs,
        mode=opt.file_mask,
        create=opt.create,
        **opt.lmdb_kwargs,
    )


def is_empty(txn: lmdb.Transaction, db: Any) -> bool:
    """Return True if the database holds no entries."""
    with txn.cursor(db) as cursor:
        return not cursor.first()


def dbi_exists(txn: lmdb.Transaction, name: str) -> bool:
    """Return True if a named database exists.

    Named databases are recorded as keys in the main database, so ``txn``
    must be bound to the main database (the default).
    """
    return txn.get(name.encode()) is not None


def read_dbi(txn: lmdb.Transaction, db: Any) -> list[tuple[bytes, bytes]]:
    """Return all (key, value) pairs of a database in key order."""
    with txn.cursor(db) as cursor:
        return [
            (bytes(key), bytes(val))
            for key, val in cursor.iternext(keys=True, values=True)
        ]


def _to_str(data: bytes) -> str:
    return data.decode("utf-8", "surrogateescape")


def read_dbi_strings(txn: lmdb.Transaction, db: Any) -> list[tuple[str, str]]:
    """Like :func:`read_dbi`, with keys and values as strings."""
    return [(_to_str(key), _to_str(val)) for key, val in read_dbi(txn, db)]


def read_dbi_names(txn: lmdb.Transaction) -> list[str]:
    """Return the names of all databases recorded in the main database."""
    return [_to_str(key) for key, _ in read_dbi(txn, None)]


@contextlib.contextmanager
def temp_env() -> Iterator[lmdb.Environment]:
    """Yield an LMDB environment in a temporary directory removed afterwards."""
    tmpdir = tempfile.mkdtemp(prefix="lmdbtest_")
    try:
        env = open_env(tmpdir, Options(create=True))
        try:
            yield env
        finally:
            env.close()
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


@contextlib.contextmanager
def temp_txn() -> Iterator[tuple[lmdb.Transaction, Any]]:
    """Yield a write transaction and a fresh database; always rolled back."""
    with temp_env() as env:
        txn = env.begin(write=True)
        try:
            db = env.open_db(_TEMP_DBI_NAME, txn=txn, create=True)
            yield txn, db
        finally:
            txn.abort()