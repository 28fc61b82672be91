"""Utilities for LMDB databases synced through snapshots: value headers,
DBI flags, insert strategies, statistics, configuration and a command line."""

__version__ = "0.1.0"

__all__ = [
    "cli",
    "collector",
    "config",
    "dbiflags",
    "header",
    "lmdbenv",
    "logger",
    "stats",
    "strategy",
]