"""Logging configuration and a formatter that prefixes the database name."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, replace

LOG_LEVELS = ("debug", "info", "warning", "error", "fatal")
LOG_FORMATS = ("human", "logfmt", "json")
LOG_TIMESTAMPS = ("short", "disable", "full")

# Every level name accepted for log.level, including aliases.
_LEVELS = {
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}

_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_SHORT_DATEFMT = "%H:%M:%S"
_FULL_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"


def _parse_level(level: str) -> int:
    try:
        return _LEVELS[level.lower()]
    except KeyError:
        raise ValueError(f"not a valid log level: {level!r}") from None


@dataclass
class LogConfig:
    """Logging settings: level, output format and timestamp style."""

    level: str = "info"
    format: str = "human"
    timestamp: str = "short"

    def check(self) -> None:
        """Raise ValueError if any setting is invalid."""
        if self.level.lower() not in _LEVELS:
            raise ValueError(f"log.level: must be one of: {', '.join(LOG_LEVELS)}")
        if self.format not in LOG_FORMATS:
            raise ValueError(f"log.format: must be one of: {', '.join(LOG_FORMATS)}")
        if self.timestamp and self.timestamp not in LOG_TIMESTAMPS:
            raise ValueError(
                f"log.timestamp: must be one of: {', '.join(LOG_TIMESTAMPS)}"
            )

    def merge(self, other: "LogConfig") -> "LogConfig":
        """Return a copy with every non-empty setting of ``other`` applied."""
        changes = {
            name: value
            for name, value in (
                ("level", other.level),
                ("format", other.format),
                ("timestamp", other.timestamp),
            )
            if value
        }
        return replace(self, **changes)


DEFAULT_CONFIG = LogConfig()


def _level_name(record: logging.LogRecord) -> str:
    if record.levelno >= logging.CRITICAL:
        return "fatal"
    return record.levelname.lower()


def _extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


def _logfmt_value(value: object) -> str:
    text = str(value)
    if not text or any(c in text for c in ' ="\t\n'):
        return json.dumps(text)
    return text


class _TextFormatter(logging.Formatter):
    """Human-readable lines: level, optional time, message and extra fields."""

    def __init__(self, datefmt: str | None):
        super().__init__(datefmt=datefmt)
        self._show_time = datefmt is not None

    def format(self, record: logging.LogRecord) -> str:
        line = f"{_level_name(record).upper()[:4]:<4}"
        if self._show_time:
            line += f"[{self.formatTime(record, self.datefmt)}]"
        line += f" {record.getMessage()}"
        for key, value in sorted(_extra_fields(record).items()):
            line += f" {key}={_logfmt_value(value)}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class _LogfmtFormatter(logging.Formatter):
    """``key=value`` lines."""

    def __init__(self, datefmt: str | None):
        super().__init__(datefmt=datefmt)
        self._show_time = datefmt is not None

    def format(self, record: logging.LogRecord) -> str:
        fields = []
        if self._show_time:
            fields.append(("time", self.formatTime(record, self.datefmt)))
        fields.append(("level", _level_name(record)))
        fields.append(("msg", record.getMessage()))
        fields.extend(sorted(_extra_fields(record).items()))
        if record.exc_info:
            fields.append(("error", self.formatException(record.exc_info)))
        return " ".join(f"{key}={_logfmt_value(value)}" for key, value in fields)


class _JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, show_time: bool):
        super().__init__(datefmt=_FULL_DATEFMT)
        self._show_time = show_time

    def format(self, record: logging.LogRecord) -> str:
        data = dict(_extra_fields(record))
        data["level"] = _level_name(record)
        data["msg"] = record.getMessage()
        if self._show_time:
            data["time"] = self.formatTime(record, self.datefmt)
        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class NamespaceFormatter(logging.Formatter):
    """Prefixes the message with the record's ``db`` attribute, if present."""

    def __init__(self, parent: logging.Formatter | None = None):
        super().__init__()
        self.parent = parent if parent is not None else logging.Formatter()

    def format(self, record: logging.LogRecord) -> str:
        db = getattr(record, "db", None)
        if db is not None:
            record = logging.makeLogRecord(vars(record))
            record.msg = f"[{db!s:<14}] {record.getMessage()}"
            record.args = None
        return self.parent.format(record)


class _ConsoleHandler(logging.StreamHandler):
    """The handler installed by :func:`configure`."""


def _make_formatter(config: LogConfig) -> logging.Formatter:
    no_timestamp = config.timestamp == "disable"
    datefmt = None if no_timestamp else (
        _FULL_DATEFMT if config.timestamp == "full" else _SHORT_DATEFMT
    )
    if config.format == "json":
        return _JSONFormatter(show_time=not no_timestamp)
    if config.format == "logfmt":
        return _LogfmtFormatter(datefmt)
    return NamespaceFormatter(_TextFormatter(datefmt))


def configure(config: LogConfig) -> None:
    """Configure the root logger according to ``config``."""
    root = logging.getLogger()
    for handler in [h for h in root.handlers if isinstance(h, _ConsoleHandler)]:
        root.removeHandler(handler)
    handler = _ConsoleHandler(sys.stderr)
    handler.setFormatter(_make_formatter(config))
    root.addHandler(handler)

    try:
        level = _parse_level(config.level)
    except ValueError:
        root.warning("Ignoring invalid log level: %s", config.level)
    else:
        root.setLevel(level)


def _with_defaults(default: str, options: tuple[str, ...]) -> str:
    return f"(default: {default}; options: {', '.join(options)})"


def add_log_arguments(parser: argparse.ArgumentParser) -> None:
    """Add ``--log-level``, ``--log-format`` and ``--log-timestamp``.

    They default to the empty string so that unset options can be told
    apart and merged over a config file with :meth:`LogConfig.merge`.
    """
    parser.add_argument(
        "--log-level",
        default="",
        help="Log level " + _with_defaults(DEFAULT_CONFIG.level, LOG_LEVELS),
    )
    parser.add_argument(
        "--log-format",
        default="",
        help="Log format " + _with_defaults(DEFAULT_CONFIG.format, LOG_FORMATS),
    )
    parser.add_argument(
        "--log-timestamp",
        default="",
        help="Log timestamp "
        + _with_defaults(DEFAULT_CONFIG.timestamp, LOG_TIMESTAMPS),
    )