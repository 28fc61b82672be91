import re

import pytest
import yaml

from lightningstream import lmdbenv
from lightningstream.config import (
    DEFAULT_LMDB_POLL_INTERVAL,
    DEFAULT_STORAGE_POLL_INTERVAL,
    DEFAULT_STORAGE_RETRY_COUNT,
    Config,
    ConfigError,
    DBIOptions,
    LMDBConfig,
    default,
    format_duration,
    parse_duration,
)
from lightningstream.dbiflags import DUP_SORT, INTEGER_KEY, parse_flags


def _valid() -> Config:
    cfg = default()
    cfg.lmdbs["main"] = LMDBConfig(path="/var/lib/lmdb/main")
    return cfg


def test_default_values():
    cfg = default()
    assert cfg.storage_retry_count == DEFAULT_STORAGE_RETRY_COUNT == 100
    assert cfg.lmdb_scrape_smaps is True
    assert cfg.log.level == "info"
    assert cfg.log.format == "human"
    assert cfg.storage.cleanup.enabled is False
    assert cfg.health.start.report_metadata is True
    assert cfg.health.start.report_healthz is False


def test_default_instances_are_independent():
    a = default()
    b = default()
    a.health.storage_list.error_duration = 1
    assert b.health.storage_list.error_duration != a.health.storage_list.error_duration


def test_check_no_lmdbs():
    with pytest.raises(ConfigError, match="no LMDBs configured"):
        default().check()


def _both_hacks(c):
    c.lmdbs["main"].schema_tracks_changes = True
    c.lmdbs["main"].dupsort_hack = True


@pytest.mark.parametrize(
    "mutate, match",
    [
        (lambda c: setattr(c.lmdbs["main"], "path", ""), "no path configured"),
        (lambda c: setattr(c.lmdbs["main"].options, "file_mask", 0o1000),
         "file_mask: too large value"),
        (lambda c: setattr(c.lmdbs["main"].options, "dir_mask", 1000),
         "dir_mask: too large value"),
        (_both_hacks, "cannot be used together with the dupsort_hack"),
        (lambda c: setattr(c.http, "address", "localhost"), "missing port in address"),
        (lambda c: setattr(c.http, "address", "a:b:c"), "too many colons"),
        (lambda c: setattr(c.http, "address", "[::1"), re.escape("missing ']'")),
        (lambda c: setattr(c, "lmdb_poll_interval", 0.05),
         "lmdb_poll_interval: too short interval"),
        (lambda c: setattr(c, "storage_poll_interval", 0.05),
         "storage_poll_interval: too short interval"),
        (lambda c: setattr(c, "storage_retry_interval", 0.01),
         "storage_retry_interval: too short interval"),
        (lambda c: setattr(c, "storage_force_snapshot_interval", 30),
         "minimum 1m if enabled"),
        (lambda c: setattr(c, "storage_retry_count", 0), "positive number required"),
        (lambda c: setattr(c.log, "level", "verbose"), "log.level: must be one of"),
    ],
)
def test_check_errors(mutate, match):
    cfg = _valid()
    mutate(cfg)
    with pytest.raises(ConfigError, match=match):
        cfg.check()


@pytest.mark.parametrize("address", ["", ":8000", "[::1]:8000", "localhost:80"])
def test_check_accepts_addresses(address):
    cfg = _valid()
    cfg.http.address = address
    cfg.storage_force_snapshot_interval = 0
    cfg.check()
    clone = cfg.clone()
    assert clone.http.address == address
    assert clone.storage_force_snapshot_interval == 0


def test_load_yaml_partial_overwrite():
    cfg = default()
    cfg.load_yaml("lmdbs:\n  main:\n    path: /data\nstorage_retry_count: 5\n")
    assert cfg.lmdbs["main"].path == "/data"
    assert cfg.storage_retry_count == 5
    assert cfg.storage_poll_interval == DEFAULT_STORAGE_POLL_INTERVAL
    assert cfg.log.level == "info"


def test_load_yaml_nested_partial():
    cfg = default()
    cfg.load_yaml(b"storage:\n  cleanup:\n    enabled: true\n")
    assert cfg.storage.cleanup.enabled is True
    assert cfg.storage.cleanup.interval == default().storage.cleanup.interval


def test_load_yaml_lmdbs_merge():
    cfg = Config()
    cfg.load_yaml("lmdbs:\n  one:\n    path: /a\n")
    cfg.load_yaml("lmdbs:\n  two:\n    path: /b\n")
    assert sorted(cfg.lmdbs) == ["one", "two"]


def test_load_yaml_durations():
    cfg = default()
    cfg.load_yaml("lmdb_poll_interval: 1m30s\nstorage_poll_interval: 250ms\n")
    assert cfg.lmdb_poll_interval == parse_duration("90s")
    assert cfg.storage_poll_interval * 4 == parse_duration("1s")


def test_load_yaml_lmdb_options():
    cfg = Config()
    cfg.load_yaml(
        "lmdbs:\n"
        "  main:\n"
        "    path: /data/main\n"
        "    options:\n"
        "      map_size: 1GB\n"
        "      file_mask: 0640\n"
        "      create: true\n"
        "    dbi_options:\n"
        "      records:\n"
        "        override_create_flags: MDB_DUPSORT|MDB_INTEGERKEY\n"
    )
    lc = cfg.lmdbs["main"]
    assert lc.options.map_size == lmdbenv.DEFAULT_MAP_SIZE
    assert lc.options.file_mask == 0o640
    assert lc.options.create is True
    assert lc.dbi_options["records"].override_create_flags == DUP_SORT | INTEGER_KEY


def test_load_yaml_invalid_flags():
    with pytest.raises(ConfigError, match="invalid persistent DBI flag"):
        Config().load_yaml(
            "lmdbs:\n  m:\n    dbi_options:\n      x:\n"
            "        override_create_flags: MDB_CREATE\n"
        )


@pytest.mark.parametrize(
    "text",
    [
        "bogus: 1\n",
        "storage:\n  foo: 1\n",
        "storage_retry_count: many\n",
        "lmdb_poll_interval: 5x\n",
        "only_once: [1]\n",
        "lmdbs: []\n",
        "- a\n",
        "lmdbs: {\n",
    ],
)
def test_load_yaml_rejects(text):
    with pytest.raises(ConfigError):
        Config().load_yaml(text)


def test_load_yaml_null_resets():
    cfg = default()
    cfg.load_yaml("storage_retry_count:\n")
    assert cfg.storage_retry_count == Config().storage_retry_count


def test_load_yaml_expand_env(monkeypatch):
    monkeypatch.setenv("LS_TEST_PATH", "/srv/lmdb")
    text = "lmdbs:\n  a:\n    path: ${LS_TEST_PATH}/db\n  b:\n    path: $LS_TEST_PATH\n"
    cfg = Config()
    cfg.load_yaml(text, True)
    assert cfg.lmdbs["a"].path == "/srv/lmdb/db"
    assert cfg.lmdbs["b"].path == "/srv/lmdb"

    raw = Config()
    raw.load_yaml(text, False)
    assert raw.lmdbs["a"].path == "${LS_TEST_PATH}/db"


def test_load_yaml_file(tmp_path):
    path = tmp_path / "lightningstream.yaml"
    path.write_text("instance: node1\nlmdbs:\n  main:\n    path: /data\n")
    cfg = default()
    cfg.load_yaml_file(path, True)
    assert cfg.instance == "node1"
    assert cfg.lmdbs["main"].path == "/data"


def test_load_yaml_file_missing(tmp_path):
    with pytest.raises(ConfigError, match="open yaml file"):
        Config().load_yaml_file(tmp_path / "missing.yaml", False)


def _populated() -> Config:
    cfg = _valid()
    cfg.instance = "node1"
    cfg.http.address = ":8500"
    cfg.storage.type = "fs"
    cfg.storage.options = {"root_path": "/snapshots", "create": True}
    lc = cfg.lmdbs["main"]
    lc.options.map_size = 1 << 30
    lc.options.file_mask = 0o640
    lc.dbi_options["records"] = DBIOptions(override_create_flags=parse_flags("MDB_DUPSORT"))
    cfg.lmdb_poll_interval = 0.1
    return cfg


def test_clone_is_equal_and_independent():
    cfg = _populated()
    clone = cfg.clone()
    assert clone == cfg
    clone.lmdbs["main"].path = "/elsewhere"
    clone.storage.options["root_path"] = "/other"
    assert cfg.lmdbs["main"].path == "/var/lib/lmdb/main"
    assert cfg.storage.options["root_path"] == "/snapshots"


def test_clone_drops_version():
    cfg = _populated()
    cfg.version = "1.2.3"
    assert cfg.clone().version == Config().version


def test_to_yaml_masks_secrets():
    cfg = _populated()
    cfg.storage.options = {"secret_key": "secret", "password": "", "bucket": "snapshots"}
    loaded = yaml.safe_load(cfg.to_yaml())
    opts = loaded["storage"]["options"]
    assert opts["secret_key"] == "***"
    assert opts["password"] == ""
    assert opts["bucket"] == "snapshots"
    assert cfg.storage.options["secret_key"] == "secret"


def test_to_yaml_layout():
    cfg = _populated()
    loaded = yaml.safe_load(cfg.to_yaml())
    assert list(loaded)[0] == "instance"
    assert "version" not in loaded
    assert "root_path" not in loaded["storage"]
    assert loaded["lmdb_poll_interval"] == format_duration(cfg.lmdb_poll_interval)
    assert str(cfg) == cfg.to_yaml()


def test_to_yaml_round_trip():
    cfg = _populated()
    new = Config()
    new.load_yaml(cfg.to_yaml())
    assert new == cfg.clone()


@pytest.mark.parametrize("seconds", [0, 0.001, 0.1, 1, 1.5, 90, 3600, 604800])
def test_duration_round_trip(seconds):
    assert parse_duration(format_duration(seconds)) == float(seconds)


def test_format_duration_pins():
    assert format_duration(3600) == "1h0m0s"
    assert format_duration(0) == "0s"
    assert format_duration(0.0015) == "1.5ms"


def test_parse_duration_equivalences():
    assert parse_duration("90s") == parse_duration("1m30s")
    assert parse_duration("1.5h") == parse_duration("90m")
    assert parse_duration("100ms") * 10 == parse_duration("1s")
    assert parse_duration("-1s") == -parse_duration("1s")
    assert parse_duration("1000us") == parse_duration("1ms")
    assert DEFAULT_LMDB_POLL_INTERVAL == parse_duration("1s")


@pytest.mark.parametrize("text", ["", "5", "5x", ".s", "abc", "-"])
def test_parse_duration_errors(text):
    with pytest.raises(ValueError, match="time:"):
        parse_duration(text)