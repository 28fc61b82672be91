"""The ``lightningstream`` command."""

from __future__ import annotations

import argparse
import logging
import os
import subprocess
import sys
import threading
from typing import Any, Mapping, Sequence

import lmdb

from lightningstream import config as configmod
from lightningstream.config import Config, ConfigError, LMDBConfig, parse_duration
from lightningstream.lmdbenv import open_env, read_dbi_names
from lightningstream.logger import LogConfig, add_log_arguments, configure
from lightningstream.stats import page_usage_bytes

VERSION = "dev"

MAXIMUM_MIN_PID = 200
SKIP_PID_CHECK_ENV = "LIGHTNINGSTREAM_NO_PID_CHECK"
TIMEOUT_EXIT_CODE = 75  # EX_TEMPFAIL

_ROOT_HELP = "This tool syncs one or more LMDB databases with an S3 bucket"

_log = logging.getLogger("lightningstream")

_BYTE_UNITS = (
    ("EB", 1 << 60),
    ("PB", 1 << 50),
    ("TB", 1 << 40),
    ("GB", 1 << 30),
    ("MB", 1 << 20),
    ("KB", 1 << 10),
)


class _FatalError(Exception):
    """An error that ends the program with exit code 1."""


def human_bytes(n: int) -> str:
    """A byte count in readable form, e.g. ``3.0 MB`` or ``512 B``."""
    for unit, size in _BYTE_UNITS:
        if n > size:
            return f"{n / size:.1f} {unit}"
    return f"{n} B"


def _duration_arg(text: str) -> float:
    try:
        return parse_duration(text)
    except ValueError as err:
        raise argparse.ArgumentTypeError(str(err)) from None


def _add_persistent(parser: argparse.ArgumentParser, root: bool) -> None:
    """Options accepted both before and after the subcommand."""

    def default(value: Any) -> Any:
        return value if root else argparse.SUPPRESS

    parser.add_argument(
        "-c", "--config", default=default("lightningstream.yaml"), help="Config file"
    )
    parser.add_argument(
        "--log-config",
        action="store_true",
        default=default(False),
        help="Log the evaluated configuration on startup",
    )
    parser.add_argument(
        "-i",
        "--instance",
        default=default(""),
        help="Instance name, defaults to hostname. MUST be unique for each instance",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=default(False),
        help="Enable debug logging",
    )
    parser.add_argument(
        "--minimum-pid",
        type=int,
        default=default(0),
        help="Try to fork processes until we reach a minimum PID to avoid LMDB "
        "lock PID clashes when running in a container. The maximum allowed "
        f"value is {MAXIMUM_MIN_PID}",
    )
    parser.add_argument(
        "--timeout",
        type=_duration_arg,
        default=default(0.0),
        help=f"Timeout for command execution (exit code {TIMEOUT_EXIT_CODE})",
    )
    if root:
        add_log_arguments(parser)
    else:
        for flag, what in (
            ("--log-level", "Log level"),
            ("--log-format", "Log format"),
            ("--log-timestamp", "Log timestamp"),
        ):
            parser.add_argument(flag, default=argparse.SUPPRESS, help=what)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lightningstream", description=_ROOT_HELP)
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s version {VERSION}"
    )
    _add_persistent(parser, root=True)
    sub = parser.add_subparsers(dest="command")
    for name, help_text in (
        ("stats", "Print LMDB stats"),
        ("version", "Print the version number"),
    ):
        cmd = sub.add_parser(name, help=help_text, description=help_text)
        _add_persistent(cmd, root=False)
    return parser


def _ensure_minimum_pid(minimum: int) -> None:
    """Make sure we run with at least a given PID, to avoid LMDB lock clashes."""
    if minimum <= 0:
        return
    pid = os.getpid()
    _log.debug("Checking PID", extra={"pid": pid})
    if minimum > MAXIMUM_MIN_PID:
        minimum = MAXIMUM_MIN_PID
        _log.warning(
            "Adjusted minimum PID to limit", extra={"pid": pid, "minimum_pid": minimum}
        )
    if pid >= minimum:
        _log.info("PID satisfies minimum", extra={"pid": pid, "minimum_pid": minimum})
        return
    if os.environ.get(SKIP_PID_CHECK_ENV):
        _log.warning(
            "PID does NOT satisfy minimum, but requested to skip check",
            extra={"pid": pid, "minimum_pid": minimum},
        )
        return

    n = minimum - pid
    _log.info("Spawning processes to increase PID", extra={"pid": pid, "n": n})
    for _ in range(n):
        try:
            subprocess.run(["/nonexistent"], check=False)
        except OSError:
            pass

    _log.info("Starting new instance", extra={"pid": pid})
    env = {**os.environ, SKIP_PID_CHECK_ENV: "1"}
    try:
        result = subprocess.run([sys.executable, *sys.orig_argv[1:]], env=env)
    except OSError as err:
        raise _FatalError(f"Error running as subcommand: {err}") from err
    if result.returncode != 0:
        _log.warning(
            "Exiting with exit code", extra={"pid": pid, "exitcode": result.returncode}
        )
        raise SystemExit(result.returncode)
    _log.debug("Exiting with success", extra={"pid": pid})
    raise SystemExit(0)


def _apply_timeout(timeout: float) -> None:
    if timeout <= 0:
        return
    _log.info("Setting command timeout", extra={"timeout": timeout})

    def expire() -> None:
        _log.warning("Timeout reached")
        _log.error("Exiting due to timeout")
        os._exit(TIMEOUT_EXIT_CODE)

    timer = threading.Timer(timeout, expire)
    timer.daemon = True
    timer.start()


def _prepare(args: argparse.Namespace) -> Config:
    """Load and validate the config and set up logging, as every command needs."""
    conf = configmod.default()
    conf.version = VERSION
    try:
        conf.load_yaml_file(args.config, True)
    except ConfigError as err:
        raise _FatalError(f"Load config file {args.config!r}: {err}") from err
    # A config must always be valid, even if items are overridden later.
    try:
        conf.check()
    except ConfigError as err:
        raise _FatalError(f"Config file error: {err}") from err

    if conf.storage.root_path:
        _log.warning(
            "storage.root_path is deprecated and will be removed, "
            "use storage.options.root_path instead"
        )
        conf.storage.options["root_path"] = conf.storage.root_path

    conf.log = conf.log.merge(
        LogConfig(
            level=args.log_level, format=args.log_format, timestamp=args.log_timestamp
        )
    )
    if args.debug:
        conf.log.level = "debug"
    if args.instance:
        conf.instance = args.instance
    configure(conf.log)
    _ensure_minimum_pid(args.minimum_pid)
    _log.debug("Running", extra={"version": VERSION})
    if args.log_config:
        _log.info("Effective configuration:\n%s\n", conf.to_yaml())
    _apply_timeout(args.timeout)
    return conf


def _fields(data: Mapping[str, Any]) -> str:
    return "{" + " ".join(f"{key}:{value}" for key, value in data.items()) + "}"


def _stats_for_lmdb(name: str, lc: LMDBConfig) -> None:
    env = open_env(lc.path, lc.options)
    try:
        with env.begin() as txn:
            info = env.info()
            print(f"{name}: Env info: {_fields(info)}")

            used_total = 0
            for dbi_name in read_dbi_names(txn):
                try:
                    db = env.open_db(
                        dbi_name.encode("utf-8", "surrogateescape"),
                        txn=txn,
                        create=False,
                    )
                    stat = txn.stat(db)
                except lmdb.Error as err:
                    raise lmdb.Error(f"dbi {dbi_name}: {err}") from err
                used = page_usage_bytes(stat)
                used_total += used
                print(f"{name}: dbi {dbi_name}: {_fields(stat)} ({human_bytes(used)})")

            map_size = info["map_size"]
            used_pct = 100 * used_total / map_size if map_size > 0 else 0.0
            print(
                f"{name}: Total Used: {human_bytes(used_total)} / "
                f"{human_bytes(map_size)} (~ {used_pct:.1f} %)"
            )
    finally:
        env.close()


def _run_stats(conf: Config) -> None:
    for name in sorted(conf.lmdbs):
        try:
            _stats_for_lmdb(name, conf.lmdbs[name])
        except (lmdb.Error, OSError) as err:
            _log.error("LMDB stats error", extra={"db": name, "error": str(err)})


def _exit_code(exc: SystemExit) -> int:
    if exc.code is None:
        return 0
    if isinstance(exc.code, int):
        return exc.code
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line; returns the exit code."""
    parser = _build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return _exit_code(exc)

    if args.command == "version":
        # No config loading for this command.
        print(VERSION)
        return 0

    try:
        conf = _prepare(args)
    except _FatalError as err:
        _log.critical("%s", err)
        return 1

    if args.command == "stats":
        _run_stats(conf)
    else:
        parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())