"""LMDB statistics: page usage, file sizes, smaps memory and logging."""

from __future__ import annotations

import logging
import os
import re
from typing import Mapping, Sequence

import lmdb

from lightningstream.lmdbenv import read_dbi_names

_log = logging.getLogger(__name__)

SMAPS_PATH = "/proc/self/smaps"
_SMAPS_WINDOW = 1024
_INT_RE = re.compile(r"[+-]?[0-9]+")


def get_memory_stats(smaps: str, dbpath: str) -> dict[str, int]:
    """Memory stats in bytes for the mapping of ``dbpath`` in smaps content.

    Keys are lower-cased smaps field names such as ``rss`` or
    ``private_clean``. An empty dict is returned if the path is not found.
    """
    offset = smaps.find(dbpath)
    if offset <= 0:
        return {}

    stats: dict[str, int] = {}
    lines = smaps[offset:offset + _SMAPS_WINDOW].split("\n")
    for line in lines[1:]:  # the first line is the mapping itself
        if " kB" not in line:
            break
        parts = line.split()
        if len(parts) < 3:
            continue
        key = parts[0][:-1].lower()
        if not _INT_RE.fullmatch(parts[1]):
            continue
        stats[key] = int(parts[1]) * 1024
    return stats


def page_usage_bytes(stat: Mapping[str, int]) -> int:
    """Estimate the bytes of map size used, from an LMDB stat dict."""
    pages = stat["branch_pages"] + stat["leaf_pages"] + stat["overflow_pages"]
    return stat["psize"] * pages


def lmdb_full_path(path: str | os.PathLike) -> str:
    """Absolute path of the LMDB data file, given its directory or file path."""
    path = os.fspath(path)
    if os.path.isdir(path):
        path = os.path.join(path, "data.mdb")
    elif not os.path.exists(path):
        raise FileNotFoundError(f"stat: no such file or directory: {path}")
    return os.path.abspath(path)


def lmdb_file_size(path: str | os.PathLike) -> int:
    """Size in bytes of the LMDB data file."""
    return os.stat(lmdb_full_path(path)).st_size


def _log_all(
    env: lmdb.Environment,
    dbnames: Sequence[str] | None,
    with_smaps: bool,
    log: logging.Logger,
) -> None:
    info = env.info()
    path = env.path()
    file_size = lmdb_file_size(path)
    log.info(
        "LMDB info",
        extra={
            "map_size": info["map_size"],
            "num_readers": info["num_readers"],
            "max_readers": info["max_readers"],
            "file_size": file_size,
        },
    )

    with env.begin() as txn:
        names = list(dbnames) if dbnames is not None else read_dbi_names(txn)
        for name in names:
            try:
                db = env.open_db(name.encode(), txn=txn, create=False)
            except lmdb.Error as err:
                raise lmdb.Error(f"opendbi {name}: {err}") from err
            stat = txn.stat(db)
            log.info(
                "LMDB db stat",
                extra={
                    "DB": name,
                    "entries": stat["entries"],
                    "depth": stat["depth"],
                    "branch_pages": stat["branch_pages"],
                    "overflow_pages": stat["overflow_pages"],
                    "psize": stat["psize"],
                },
            )

    if with_smaps:
        full_path = lmdb_full_path(path)
        try:
            with open(SMAPS_PATH, encoding="utf-8", errors="replace") as f:
                data = f.read()
        except FileNotFoundError:
            return
        log.info("LMDB memory", extra=get_memory_stats(data, full_path))


def log_stats(
    env: lmdb.Environment,
    dbnames: Sequence[str] | None = None,
    with_smaps: bool = False,
    log: logging.Logger | None = None,
) -> None:
    """Log all LMDB statistics once; all databases if ``dbnames`` is None.

    Failures are logged as errors rather than raised.
    """
    if log is None:
        log = _log
    try:
        _log_all(env, dbnames, with_smaps, log)
    except (lmdb.Error, OSError) as err:
        _log.error("LMDB stats logger: %s", err, extra={"error": str(err)})