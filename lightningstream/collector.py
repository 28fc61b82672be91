"""Collection of LMDB metrics in a form ready for export to a monitoring system."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import NamedTuple, Sequence

import lmdb

from lightningstream.lmdbenv import read_dbi_names
from lightningstream.stats import (
    SMAPS_PATH,
    get_memory_stats,
    lmdb_file_size,
    lmdb_full_path,
    page_usage_bytes,
)

_log = logging.getLogger(__name__)


@dataclass
class Metric:
    """A single gauge sample."""

    name: str
    value: float
    labels: dict[str, str] = field(default_factory=dict)


class _Desc(NamedTuple):
    """Description of a metric: its name, help text and label names."""

    name: str
    help: str
    labels: tuple[str, ...]

    def metric(self, value: float, *label_values: str) -> Metric:
        return Metric(self.name, float(value), dict(zip(self.labels, label_values)))


_ENV_MAP_SIZE = _Desc("lmdb_mapsize_bytes", "Map size of LMDB database", ("lmdb",))
_ENV_CURRENT_READERS = _Desc(
    "lmdb_env_readers_current", "Number of current readers for LMDB database", ("lmdb",)
)
_ENV_MAX_READERS = _Desc(
    "lmdb_env_readers_max", "Maximum number of readers for LMDB database", ("lmdb",)
)
_ENV_LAST_TXN_ID = _Desc(
    "lmdb_env_last_tnx_id", "Last write transaction ID of LMDB database", ("lmdb",)
)
_ENV_FILE_SIZE = _Desc("lmdb_filesize_bytes", "File size of LMDB database", ("lmdb",))
_STAT_USAGE_BYTES = _Desc(
    "lmdb_db_usage_bytes",
    "Bytes used in last version by data in databases",
    ("lmdb", "db"),
)
_STAT_TOTAL_USAGE_BYTES = _Desc(
    "lmdb_total_usage_bytes",
    "Bytes used in last version by data in all databases",
    ("lmdb",),
)
_STAT_TOTAL_USAGE_FRACTION = _Desc(
    "lmdb_total_usage_fraction",
    "Bytes used in last version by data in all databases as fraction (0-1) of map size",
    ("lmdb",),
)
_STAT_ENTRIES = _Desc(
    "lmdb_stat_entries", "Number of entries in named LMDB database", ("lmdb", "db")
)
_STAT_PAGES = _Desc(
    "lmdb_stat_pages",
    "Number of pages (4kB) in named LMDB database per page type "
    "(branch, leaf and overflow)",
    ("lmdb", "db", "pagetype"),
)
_STAT_DEPTH = _Desc("lmdb_stat_depth", "Tree depth in named LMDB database", ("lmdb", "db"))
_SMAPS = _Desc(
    "lmdb_smaps_bytes",
    "Memory statistics for LMDB database from /proc/self/smaps (Linux only)",
    ("lmdb", "database_path", "smap"),
)

_ALL_DESCS = (
    _ENV_MAP_SIZE,
    _ENV_CURRENT_READERS,
    _ENV_MAX_READERS,
    _ENV_LAST_TXN_ID,
    _ENV_FILE_SIZE,
    _STAT_USAGE_BYTES,
    _STAT_TOTAL_USAGE_BYTES,
    _STAT_TOTAL_USAGE_FRACTION,
    _STAT_ENTRIES,
    _STAT_PAGES,
    _STAT_DEPTH,
    _SMAPS,
)


@dataclass
class Target:
    """An LMDB environment to collect metrics for.

    ``dbnames`` of None means every named database in the environment.
    """

    name: str
    dbnames: Sequence[str] | None
    env: lmdb.Environment


class Collector:
    """Collects statistics of registered LMDB environments as metrics.

    Reading ``/proc/self/smaps`` (Linux only) may be expensive and is
    controlled by ``with_smaps``.
    """

    def __init__(self, with_smaps: bool = False):
        self._lock = threading.Lock()
        self._targets: dict[str, Target] = {}
        self._smaps = with_smaps

    def add_target(
        self, name: str, dbnames: Sequence[str] | None, env: lmdb.Environment
    ) -> None:
        """Register (or replace) an environment under ``name``."""
        with self._lock:
            self._targets[name] = Target(
                name, None if dbnames is None else list(dbnames), env
            )

    def enable_smaps(self, enabled: bool) -> None:
        """Turn smaps memory statistics on or off."""
        with self._lock:
            self._smaps = enabled

    def describe(self) -> list[_Desc]:
        """Descriptions of all metrics this collector can produce."""
        return list(_ALL_DESCS)

    def collect(self) -> list[Metric]:
        """Gather metrics for all targets.

        A failing target is logged; the metrics gathered before the
        failure are still returned.
        """
        with self._lock:
            targets = [self._targets[name] for name in sorted(self._targets)]
        metrics: list[Metric] = []
        for target in targets:
            try:
                self._collect_target(metrics, target)
            except (lmdb.Error, OSError) as err:
                _log.error("Collector: %s", err)
        return metrics

    def _collect_target(self, out: list[Metric], t: Target) -> None:
        info = t.env.info()
        map_size = info["map_size"]
        out.append(_ENV_MAP_SIZE.metric(map_size, t.name))
        out.append(_ENV_CURRENT_READERS.metric(info["num_readers"], t.name))
        out.append(_ENV_LAST_TXN_ID.metric(info["last_txnid"], t.name))
        out.append(_ENV_MAX_READERS.metric(info["max_readers"], t.name))

        path = t.env.path()
        out.append(_ENV_FILE_SIZE.metric(lmdb_file_size(path), t.name))

        with t.env.begin() as txn:
            dbnames = t.dbnames if t.dbnames is not None else read_dbi_names(txn)
            total_used = 0
            for dbname in dbnames:
                try:
                    db = t.env.open_db(
                        dbname.encode("utf-8", "surrogateescape"), txn=txn, create=False
                    )
                except lmdb.Error as err:
                    raise lmdb.Error(f"opendbi {dbname}: {err}") from err
                stat = txn.stat(db)
                used = page_usage_bytes(stat)
                total_used += used
                out.append(_STAT_USAGE_BYTES.metric(used, t.name, dbname))
                out.append(_STAT_ENTRIES.metric(stat["entries"], t.name, dbname))
                out.append(_STAT_DEPTH.metric(stat["depth"], t.name, dbname))
                out.append(
                    _STAT_PAGES.metric(stat["branch_pages"], t.name, dbname, "branch")
                )
                out.append(
                    _STAT_PAGES.metric(stat["leaf_pages"], t.name, dbname, "leaf")
                )
                out.append(
                    _STAT_PAGES.metric(
                        stat["overflow_pages"], t.name, dbname, "overflow"
                    )
                )
            out.append(_STAT_TOTAL_USAGE_BYTES.metric(total_used, t.name))
            if map_size > 0:
                out.append(
                    _STAT_TOTAL_USAGE_FRACTION.metric(total_used / map_size, t.name)
                )

        with self._lock:
            smaps = self._smaps
        if not smaps:
            return
        full_path = lmdb_full_path(path)
        try:
            with open(SMAPS_PATH, encoding="utf-8", errors="replace") as f:
                data = f.read()
        except FileNotFoundError:
            return
        memory = get_memory_stats(data, full_path)
        for key in sorted(memory):
            out.append(_SMAPS.metric(memory[key], t.name, full_path, key))