# lightningstream

Utilities for working with LMDB databases whose contents are kept in sync
through snapshots. The package provides:

- **Value headers** (`lightningstream.header`): `parse`, `skip` and
  `parse_timestamp` read the 24+ byte header that prefixes every value in a
  change-tracking schema (timestamp in nanoseconds, transaction id, flags
  such as "deleted", and optional extra 8-byte blocks); `Header.to_bytes`
  and `put_basic` write it. Malformed values raise `TooShortError` or
  `VersionError`, both subclasses of `HeaderError`.
- **DBI flags** (`lightningstream.dbiflags`): the persistent LMDB database
  flags (`MDB_DUPSORT`, `MDB_INTEGERKEY`, ...) as a `Flags` type, with
  `parse_flags` for the relaxed text form used in config files
  (`"MDB_INTEGERKEY|MDB_INTEGERDUP"`, `"IntegerKey IntegerDup"`, `"0x28"`)
  and `Flags.friendly_string` for readable output.
- **Environment helpers** (`lightningstream.lmdbenv`): `open_env` with
  defaults from `Options`, `is_empty`, `dbi_exists`, `read_dbi`,
  `read_dbi_strings`, `read_dbi_names`, and the `temp_env` / `temp_txn`
  context managers for throwaway databases in tests.
- **Insert strategies** (`lightningstream.strategy`): `append`, `put`,
  `empty_put`, `update`, `iter_put` and `iter_update`, driven by an
  `Iterator` that yields keys and merges or cleans values; `pick` chooses
  one from `Facts` about the target database. Unsorted input to a strategy
  that needs sorted keys raises `NotSortedError`.
- **Statistics** (`lightningstream.stats`, `lightningstream.collector`):
  page usage, file size, `/proc/self/smaps` memory figures, `log_stats`
  for logging them once, and a `Collector` that produces gauge `Metric`
  values per environment and database.
- **Configuration** (`lightningstream.config`): the YAML config file with
  its defaults (`default()`), loading (`Config.load_yaml`,
  `Config.load_yaml_file`), validation (`Config.check`, raising
  `ConfigError`) and a dump with secrets in storage options masked
  (`Config.to_yaml`). Durations are written like `1s`, `5m`, `4h`
  (`parse_duration`, `format_duration`).
- **Logging** (`lightningstream.logger`): `LogConfig` with levels, formats
  (`human`, `logfmt`, `json`) and timestamp styles, `configure`, and a
  `NamespaceFormatter` that prefixes messages with the database name.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Command line

The `lightningstream` command reads a YAML config file
(`lightningstream.yaml` by default, or the one given with `-c`), checks
it, and sets up logging before running a subcommand.

Print statistics for every configured LMDB:

```
lightningstream -c lightningstream.yaml stats
```

Print the version (this does not read the config file):

```
lightningstream version
```

Common options: `--debug`, `--log-level`, `--log-format`,
`--log-timestamp`, `--log-config` (log the effective configuration with
secrets masked), `--instance`, `--minimum-pid` (spawn processes and
restart until the process ID reaches the given minimum, at most 200) and
`--timeout` (the command exits with code 75 when the timeout is reached).

A minimal config file:

```yaml
instance: node1
lmdbs:
  main:
    path: /var/lib/app/db
    options:
      create: true
      map_size: 1GB
storage:
  type: fs
  options:
    root_path: /var/lib/app/snapshots
```

## Library example

```python
from lightningstream import header

h = header.Header(timestamp=1_700_000_000_000_000_000, txn_id=42,
                  flags=header.HeaderFlags.DELETED)
raw = h.to_bytes() + b"value"
parsed, app_value = header.parse(raw)
assert parsed.flags.is_deleted()
assert app_value == b"value"
```

## What this package does not do

The package does not sync anything by itself. It has no storage backends
(the `storage` section of the config is loaded and checked, but nothing
reads or writes snapshots), no snapshot format, no `sync` or `receive`
command, no storage cleanup and no HTTP server for metrics or health
status. The `Collector` returns `Metric` values; exporting them is left to
the caller. The only commands are `stats` and `version`.