"""The YAML configuration file: data model, defaults, loading and validation."""

from __future__ import annotations

import dataclasses
import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, NamedTuple

import yaml

from lightningstream.dbiflags import Flags, parse_flags
from lightningstream.lmdbenv import Options as LMDBOptions
from lightningstream.logger import LogConfig

_NS = 1_000_000_000

# Default intervals, in seconds.
DEFAULT_LMDB_LOG_STATS_INTERVAL = 30 * 60
DEFAULT_LMDB_POLL_INTERVAL = 1
DEFAULT_STORAGE_POLL_INTERVAL = 1
DEFAULT_STORAGE_RETRY_INTERVAL = 5
DEFAULT_STORAGE_RETRY_COUNT = 100
DEFAULT_STORAGE_FORCE_SNAPSHOT_INTERVAL = 4 * 3600


class ConfigError(ValueError):
    """The configuration cannot be loaded or is invalid."""


# ---------------------------------------------------------------------------
# Durations

_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": _NS,
    "m": 60 * _NS,
    "h": 3600 * _NS,
}
_DURATION_PART = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")
_MAX_NS = (1 << 63) - 1


def parse_duration(text: str) -> float:
    """Parse a duration such as ``1h30m``, ``250ms`` or ``1.5s`` into seconds."""
    s = text
    negative = False
    if s[:1] in ("+", "-"):
        negative = s[0] == "-"
        s = s[1:]
    if s == "0":
        return 0.0
    if not s:
        raise ValueError(f'time: invalid duration "{text}"')
    total = 0
    pos = 0
    while pos < len(s):
        m = _DURATION_PART.match(s, pos)
        whole, frac, unit = m.group(1), m.group(2), m.group(3)
        if not whole and not frac:
            raise ValueError(f'time: invalid duration "{text}"')
        if not unit:
            raise ValueError(f'time: missing unit in duration "{text}"')
        scale = _DURATION_UNITS.get(unit)
        if scale is None:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{text}"')
        total += int(whole or "0") * scale
        if frac:
            total += int(frac) * scale // 10 ** len(frac)
        if total > _MAX_NS:
            raise ValueError(f'time: invalid duration "{text}"')
        pos = m.end()
    return (-total if negative else total) / _NS


def _to_ns(seconds: float) -> int:
    return round(seconds * _NS)


def _fraction(value: int, precision: int) -> str:
    whole, frac = divmod(value, 10**precision)
    text = str(whole)
    if frac:
        text += "." + f"{frac:0{precision}d}".rstrip("0")
    return text


def format_duration(seconds: float) -> str:
    """Format seconds as a duration string such as ``1h0m0s`` or ``100ms``."""
    ns = _to_ns(seconds)
    sign = "-" if ns < 0 else ""
    u = abs(ns)
    if u == 0:
        return "0s"
    if u < _NS:
        if u < 1_000:
            return f"{sign}{u}ns"
        if u < 1_000_000:
            return f"{sign}{_fraction(u, 3)}µs"
        return f"{sign}{_fraction(u, 6)}ms"
    secs = _fraction(u % (60 * _NS), 9) + "s"
    minutes = u // (60 * _NS)
    if minutes == 0:
        return sign + secs
    hours, mins = divmod(minutes, 60)
    out = f"{mins}m{secs}"
    if hours:
        out = f"{hours}h{out}"
    return sign + out


# ---------------------------------------------------------------------------
# Byte sizes

_BYTE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1 << 10,
    "kb": 1 << 10,
    "m": 1 << 20,
    "mb": 1 << 20,
    "g": 1 << 30,
    "gb": 1 << 30,
    "t": 1 << 40,
    "tb": 1 << 40,
    "p": 1 << 50,
    "pb": 1 << 50,
    "e": 1 << 60,
    "eb": 1 << 60,
}
_BYTE_FORMAT_UNITS = (
    ("EB", 1 << 60),
    ("PB", 1 << 50),
    ("TB", 1 << 40),
    ("GB", 1 << 30),
    ("MB", 1 << 20),
    ("KB", 1 << 10),
)
_BYTE_SIZE_RE = re.compile(r"\s*([0-9]+)\s*([A-Za-z]*)\s*")


def _parse_byte_size(text: str) -> int:
    m = _BYTE_SIZE_RE.fullmatch(text)
    if not m:
        raise ValueError(f"invalid byte size: {text!r}")
    multiplier = _BYTE_UNITS.get(m.group(2).lower())
    if multiplier is None:
        raise ValueError(f"invalid byte size unit: {text!r}")
    return int(m.group(1)) * multiplier


def _format_byte_size(n: int) -> str:
    for unit, multiplier in _BYTE_FORMAT_UNITS:
        if n and n % multiplier == 0:
            return f"{n // multiplier}{unit}"
    return f"{n}B"


# ---------------------------------------------------------------------------
# Data model


@dataclass
class HealthConfig:
    """Health thresholds for a storage operation, in seconds."""

    error_duration: float = 0.0
    warn_duration: float = 0.0
    evaluation_interval: float = 0.0


@dataclass
class StartConfig:
    """Health thresholds for the startup phase, in seconds."""

    error_duration: float = 0.0
    warn_duration: float = 0.0
    evaluation_interval: float = 0.0
    report_healthz: bool = False
    report_metadata: bool = False


DEFAULT_HEALTH_STORAGE_LIST = HealthConfig(300, 60, 5)
DEFAULT_HEALTH_STORAGE_LOAD = HealthConfig(300, 60, 5)
DEFAULT_HEALTH_STORAGE_STORE = HealthConfig(300, 60, 5)
DEFAULT_HEALTH_START = StartConfig(
    error_duration=300,
    warn_duration=60,
    evaluation_interval=1,
    report_healthz=False,
    report_metadata=True,
)


@dataclass
class DBIOptions:
    """Per-DBI options.

    ``override_create_flags`` replaces the DBI flags stored in a snapshot
    when a missing DBI is created while loading it.
    """

    override_create_flags: Flags | None = None


@dataclass
class LMDBConfig:
    """One LMDB database to sync."""

    path: str = ""
    options: LMDBOptions = field(default_factory=LMDBOptions)
    dbi_options: dict[str, DBIOptions] = field(default_factory=dict)
    schema_tracks_changes: bool = False
    dupsort_hack: bool = False
    header_extra_padding_block: bool = False


@dataclass
class Cleanup:
    """Storage cleanup of old snapshots; intervals in seconds."""

    enabled: bool = False
    interval: float = 0.0
    must_keep_interval: float = 0.0
    remove_old_instances_interval: float = 0.0


@dataclass
class Storage:
    """Storage backend settings."""

    type: str = ""
    options: dict[str, Any] = field(default_factory=dict)
    cleanup: Cleanup = field(default_factory=Cleanup)
    root_path: str = ""  # deprecated: use options["root_path"]


@dataclass
class HTTPConfig:
    """HTTP server with metrics and status page."""

    address: str = ""


@dataclass
class Health:
    """Health error and warning thresholds."""

    storage_list: HealthConfig = field(default_factory=HealthConfig)
    storage_load: HealthConfig = field(default_factory=HealthConfig)
    storage_store: HealthConfig = field(default_factory=HealthConfig)
    start: StartConfig = field(default_factory=StartConfig)


def _zero_log_config() -> LogConfig:
    return LogConfig(level="", format="", timestamp="")


def _split_host_port(hostport: str) -> tuple[str, str]:
    def fail(reason: str) -> ValueError:
        return ValueError(f"address {hostport}: {reason}")

    i = hostport.rfind(":")
    if i < 0:
        raise fail("missing port in address")
    j = k = 0
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise fail("missing ']' in address")
        if end + 1 == len(hostport):
            raise fail("missing port in address")
        if end + 1 != i:
            if hostport[end + 1] == ":":
                raise fail("too many colons in address")
            raise fail("missing port in address")
        host = hostport[1:end]
        j, k = 1, end + 1
    else:
        host = hostport[:i]
        if ":" in host:
            raise fail("too many colons in address")
    if "[" in hostport[j:]:
        raise fail("unexpected '[' in address")
    if "]" in hostport[k:]:
        raise fail("unexpected ']' in address")
    return host, hostport[i + 1:]


_ENV_RE = re.compile(
    r"\$(?:\{([^}]*)\}|(\{)|([*#$@!?\-0-9])|([A-Za-z0-9_]+))"
)


def _expand_env(text: str) -> str:
    def repl(m: re.Match) -> str:
        braced, bad, special, name = m.groups()
        if bad is not None:
            return ""
        key = braced if braced is not None else (special or name)
        return os.environ.get(key, "") if key else ""

    return _ENV_RE.sub(repl, text)


@dataclass
class Config:
    """The configuration root. Intervals are in seconds."""

    instance: str = ""
    lmdbs: dict[str, LMDBConfig] = field(default_factory=dict)
    storage: Storage = field(default_factory=Storage)
    http: HTTPConfig = field(default_factory=HTTPConfig)
    log: LogConfig = field(default_factory=_zero_log_config)
    health: Health = field(default_factory=Health)
    lmdb_poll_interval: float = 0.0
    lmdb_log_stats_interval: float = 0.0
    storage_poll_interval: float = 0.0
    storage_retry_interval: float = 0.0
    storage_retry_count: int = 0
    storage_retry_forever: bool = False
    storage_force_snapshot_interval: float = 0.0
    lmdb_scrape_smaps: bool = False
    only_once: bool = False
    version: str = ""  # set by the program, never read from YAML

    def check(self) -> None:
        """Raise ConfigError if the configuration is invalid."""
        try:
            self.log.check()
        except ValueError as err:
            raise ConfigError(str(err)) from None
        if not self.lmdbs:
            raise ConfigError("no LMDBs configured")
        for name, lc in self.lmdbs.items():
            if not lc.path:
                raise ConfigError(f"lmdb {json.dumps(name)}: no path configured")
            for attr in ("file_mask", "dir_mask"):
                mask = getattr(lc.options, attr)
                if mask > 0o777:
                    raise ConfigError(
                        f"lmdb.options.{attr}: too large value, possible use of "
                        f"decimal ({mask}) instead of octal (0{mask:o})"
                    )
            if lc.schema_tracks_changes and lc.dupsort_hack:
                raise ConfigError(
                    "lmdb.schema_tracks_changes: cannot be used together with "
                    "the dupsort_hack option"
                )
        if self.http.address:
            try:
                _split_host_port(self.http.address)
            except ValueError as err:
                raise ConfigError(f"http.address: {err}") from None
        minimum = 100_000_000
        for attr in (
            "lmdb_poll_interval",
            "storage_poll_interval",
            "storage_retry_interval",
        ):
            if _to_ns(getattr(self, attr)) < minimum:
                raise ConfigError(f"{attr}: too short interval")
        force = _to_ns(self.storage_force_snapshot_interval)
        if force != 0 and force < 60 * _NS:
            raise ConfigError(
                "storage_force_snapshot_interval: too short interval "
                "(minimum 1m if enabled)"
            )
        if self.storage_retry_count < 1:
            raise ConfigError("storage_retry_count: positive number required")

    def clone(self) -> "Config":
        """Deep copy by a YAML round trip; fields not kept in YAML are dropped."""
        text = yaml.safe_dump(_encode(self), sort_keys=False)
        new = Config()
        _decode_into(new, yaml.safe_load(text), "")
        return new

    def to_yaml(self) -> str:
        """The configuration as YAML, with secrets in storage options masked."""
        cc = self.clone()
        opts = cc.storage.options
        for key in ("secret_key", "secret", "password"):
            value = opts.get(key)
            if isinstance(value, str) and value:
                opts[key] = "***"
        return yaml.safe_dump(
            _encode(cc), sort_keys=False, default_flow_style=False, allow_unicode=True
        )

    def __str__(self) -> str:
        return self.to_yaml()

    def load_yaml(self, contents: str | bytes, expand_env: bool = False) -> None:
        """Load YAML over this config; omitted keys keep their current values.

        Unknown keys and values of the wrong type raise ConfigError.
        """
        if isinstance(contents, bytes):
            contents = contents.decode("utf-8")
        if expand_env:
            contents = _expand_env(contents)
        try:
            raw = yaml.safe_load(contents)
        except yaml.YAMLError as err:
            raise ConfigError(f"yaml: {err}") from err
        if raw is None:
            return
        _decode_into(self, raw, "")

    def load_yaml_file(self, path: str | os.PathLike, expand_env: bool = False) -> None:
        """Load a YAML file over this config, like :meth:`load_yaml`."""
        try:
            with open(path, "rb") as f:
                contents = f.read()
        except OSError as err:
            raise ConfigError(f"open yaml file: {err}") from err
        self.load_yaml(contents, expand_env)


def default() -> Config:
    """A Config with default settings."""
    return Config(
        log=LogConfig(),
        health=Health(
            storage_list=dataclasses.replace(DEFAULT_HEALTH_STORAGE_LIST),
            storage_load=dataclasses.replace(DEFAULT_HEALTH_STORAGE_LOAD),
            storage_store=dataclasses.replace(DEFAULT_HEALTH_STORAGE_STORE),
            start=dataclasses.replace(DEFAULT_HEALTH_START),
        ),
        lmdb_scrape_smaps=True,
        lmdb_poll_interval=DEFAULT_LMDB_POLL_INTERVAL,
        lmdb_log_stats_interval=DEFAULT_LMDB_LOG_STATS_INTERVAL,
        storage_poll_interval=DEFAULT_STORAGE_POLL_INTERVAL,
        storage_retry_interval=DEFAULT_STORAGE_RETRY_INTERVAL,
        storage_retry_count=DEFAULT_STORAGE_RETRY_COUNT,
        storage_force_snapshot_interval=DEFAULT_STORAGE_FORCE_SNAPSHOT_INTERVAL,
        storage=Storage(
            cleanup=Cleanup(
                enabled=False,
                interval=5 * 60,
                must_keep_interval=10 * 60,
                remove_old_instances_interval=7 * 24 * 3600,
            ),
        ),
    )


# ---------------------------------------------------------------------------
# YAML mapping


def _where(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _type_error(where: str, raw: Any, expected: str) -> ConfigError:
    return ConfigError(f"{where}: cannot use {raw!r} as {expected}")


class _Str:
    def decode(self, raw: Any, current: Any, where: str) -> str:
        if raw is None:
            return ""
        if isinstance(raw, bool):
            return "true" if raw else "false"
        if isinstance(raw, (str, int, float)):
            return str(raw)
        raise _type_error(where, raw, "string")

    def encode(self, value: str) -> str:
        return str(value)


class _Int:
    def decode(self, raw: Any, current: Any, where: str) -> int:
        if raw is None:
            return 0
        if isinstance(raw, int) and not isinstance(raw, bool):
            return raw
        raise _type_error(where, raw, "integer")

    def encode(self, value: int) -> int:
        return int(value)


class _Bool:
    def decode(self, raw: Any, current: Any, where: str) -> bool:
        if raw is None:
            return False
        if isinstance(raw, bool):
            return raw
        raise _type_error(where, raw, "boolean")

    def encode(self, value: bool) -> bool:
        return bool(value)


class _Duration:
    """Duration strings; bare integers are nanoseconds."""

    def decode(self, raw: Any, current: Any, where: str) -> float:
        if raw is None:
            return 0.0
        if isinstance(raw, int) and not isinstance(raw, bool):
            return raw / _NS
        if isinstance(raw, str):
            try:
                return parse_duration(raw)
            except ValueError as err:
                raise ConfigError(f"{where}: {err}") from None
        raise _type_error(where, raw, "duration")

    def encode(self, value: float) -> str:
        return format_duration(value)


class _ByteSize:
    def decode(self, raw: Any, current: Any, where: str) -> int:
        if raw is None:
            return 0
        if isinstance(raw, bool) or not isinstance(raw, (int, str)):
            raise _type_error(where, raw, "byte size")
        try:
            return _parse_byte_size(str(raw))
        except ValueError as err:
            raise ConfigError(f"{where}: {err}") from None

    def encode(self, value: int) -> str:
        return _format_byte_size(value)


class _DBIFlags:
    def decode(self, raw: Any, current: Any, where: str) -> Flags | None:
        if raw is None:
            return None
        if isinstance(raw, bool) or not isinstance(raw, (int, str)):
            raise _type_error(where, raw, "DBI flags")
        try:
            return parse_flags(str(raw))
        except ValueError as err:
            raise ConfigError(f"{where}: {err}") from None

    def encode(self, value: Flags | None) -> str | None:
        return None if value is None else str(value)


class _AnyMap:
    """A mapping of arbitrary values, merged into the existing one."""

    def decode(self, raw: Any, current: Any, where: str) -> dict:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise _type_error(where, raw, "mapping")
        result = dict(current or {})
        result.update((str(k), v) for k, v in raw.items())
        return result

    def encode(self, value: dict) -> dict:
        return {k: value[k] for k in sorted(value)}


class _Nested:
    def __init__(self, factory: Callable[[], Any]):
        self._factory = factory

    def decode(self, raw: Any, current: Any, where: str) -> Any:
        if raw is None:
            return self._factory()
        obj = current if current is not None else self._factory()
        _decode_into(obj, raw, where)
        return obj

    def encode(self, value: Any) -> dict:
        return _encode(value)


class _Map:
    """A mapping whose values are decoded fresh; keys are merged."""

    def __init__(self, codec: Any):
        self._codec = codec

    def decode(self, raw: Any, current: Any, where: str) -> dict:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise _type_error(where, raw, "mapping")
        result = dict(current or {})
        for key, value in raw.items():
            result[str(key)] = self._codec.decode(value, None, _where(where, str(key)))
        return result

    def encode(self, value: dict) -> dict:
        return {k: self._codec.encode(value[k]) for k in sorted(value)}


class _Field(NamedTuple):
    attr: str
    key: str
    codec: Any
    omitempty: bool = False


_STR, _INT, _BOOL, _DUR = _Str(), _Int(), _Bool(), _Duration()


def _fields(*specs: tuple) -> tuple[_Field, ...]:
    return tuple(_Field(spec[0], spec[0], *spec[1:]) for spec in specs)


_SCHEMAS: dict[type, tuple[_Field, ...]] = {
    HealthConfig: _fields(
        ("error_duration", _DUR),
        ("warn_duration", _DUR),
        ("evaluation_interval", _DUR),
    ),
    StartConfig: _fields(
        ("error_duration", _DUR),
        ("warn_duration", _DUR),
        ("evaluation_interval", _DUR),
        ("report_healthz", _BOOL),
        ("report_metadata", _BOOL),
    ),
    LMDBOptions: _fields(
        ("dir_mask", _INT),
        ("file_mask", _INT),
        ("map_size", _ByteSize()),
        ("max_dbs", _INT),
        ("no_subdir", _BOOL),
        ("create", _BOOL),
    ),
    DBIOptions: _fields(("override_create_flags", _DBIFlags())),
    LMDBConfig: _fields(
        ("path", _STR),
        ("options", _Nested(LMDBOptions)),
        ("dbi_options", _Map(_Nested(DBIOptions))),
        ("schema_tracks_changes", _BOOL),
        ("dupsort_hack", _BOOL),
        ("header_extra_padding_block", _BOOL),
    ),
    Cleanup: _fields(
        ("enabled", _BOOL),
        ("interval", _DUR),
        ("must_keep_interval", _DUR),
        ("remove_old_instances_interval", _DUR),
    ),
    Storage: _fields(
        ("type", _STR),
        ("options", _AnyMap()),
        ("cleanup", _Nested(Cleanup)),
        ("root_path", _STR, True),
    ),
    HTTPConfig: _fields(("address", _STR)),
    LogConfig: _fields(("level", _STR), ("format", _STR), ("timestamp", _STR)),
    Health: _fields(
        ("storage_list", _Nested(HealthConfig)),
        ("storage_load", _Nested(HealthConfig)),
        ("storage_store", _Nested(HealthConfig)),
        ("start", _Nested(StartConfig)),
    ),
    Config: _fields(
        ("instance", _STR),
        ("lmdbs", _Map(_Nested(LMDBConfig))),
        ("storage", _Nested(Storage)),
        ("http", _Nested(HTTPConfig)),
        ("log", _Nested(_zero_log_config)),
        ("health", _Nested(Health)),
        ("lmdb_poll_interval", _DUR),
        ("lmdb_log_stats_interval", _DUR),
        ("storage_poll_interval", _DUR),
        ("storage_retry_interval", _DUR),
        ("storage_retry_count", _INT),
        ("storage_retry_forever", _BOOL),
        ("storage_force_snapshot_interval", _DUR),
        ("lmdb_scrape_smaps", _BOOL),
        ("only_once", _BOOL),
    ),
}


def _decode_into(obj: Any, raw: Any, where: str) -> None:
    if not isinstance(raw, dict):
        raise _type_error(where or "config", raw, "mapping")
    fields = {f.key: f for f in _SCHEMAS[type(obj)]}
    for key, value in raw.items():
        spec = fields.get(key)
        path = _where(where, str(key))
        if spec is None:
            raise ConfigError(f"{path}: field not found in {type(obj).__name__}")
        setattr(obj, spec.attr, spec.codec.decode(value, getattr(obj, spec.attr), path))


def _encode(obj: Any) -> dict:
    out = {}
    for spec in _SCHEMAS[type(obj)]:
        value = getattr(obj, spec.attr)
        if spec.omitempty and not value:
            continue
        out[spec.key] = spec.codec.encode(value)
    return out