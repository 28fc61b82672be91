import os

import lmdb
import pytest

from lightningstream import lmdbenv
from lightningstream.lmdbenv import (
    DEFAULT_DIR_MASK,
    DEFAULT_FILE_MASK,
    DEFAULT_MAX_DBS,
    Options,
)


def test_dbi_exists():
    with lmdbenv.temp_env() as env:
        with env.begin(write=True) as txn:
            assert lmdbenv.dbi_exists(txn, "does-not") is False
            env.open_db(b"foo", txn=txn, create=True)
            assert lmdbenv.dbi_exists(txn, "foo") is True


def test_options_with_defaults():
    opt = Options().with_defaults()
    assert opt.dir_mask == DEFAULT_DIR_MASK == 0o775
    assert opt.file_mask == DEFAULT_FILE_MASK == 0o664
    assert opt.max_dbs == DEFAULT_MAX_DBS == 64
    assert opt.map_size == 0


def test_options_with_defaults_keeps_set_values():
    original = Options(dir_mask=0o700, file_mask=0o600, max_dbs=8, map_size=4096)
    opt = original.with_defaults()
    assert (opt.dir_mask, opt.file_mask, opt.max_dbs, opt.map_size) == (
        0o700,
        0o600,
        8,
        4096,
    )
    assert Options().dir_mask == 0


def test_is_empty():
    with lmdbenv.temp_txn() as (txn, db):
        assert lmdbenv.is_empty(txn, db) is True
        txn.put(b"k", b"v", db=db)
        assert lmdbenv.is_empty(txn, db) is False


def test_read_dbi_in_key_order():
    with lmdbenv.temp_txn() as (txn, db):
        txn.put(b"b", b"2", db=db)
        txn.put(b"a", b"1", db=db)
        assert lmdbenv.read_dbi(txn, db) == [(b"a", b"1"), (b"b", b"2")]
        assert lmdbenv.read_dbi_strings(txn, db) == [("a", "1"), ("b", "2")]


def test_read_dbi_empty():
    with lmdbenv.temp_txn() as (txn, db):
        assert lmdbenv.read_dbi_strings(txn, db) == []


def test_read_dbi_names():
    with lmdbenv.temp_env() as env:
        with env.begin(write=True) as txn:
            env.open_db(b"zeta", txn=txn, create=True)
            env.open_db(b"alpha", txn=txn, create=True)
            assert lmdbenv.read_dbi_names(txn) == ["alpha", "zeta"]


def test_temp_env_removes_directory():
    with lmdbenv.temp_env() as env:
        path = env.path()
        assert os.path.isdir(path)
        with env.begin() as txn:
            assert lmdbenv.is_empty(txn, env.open_db()) is True
    assert not os.path.exists(path)


def test_open_env_without_create_fails_on_missing(tmp_path):
    with pytest.raises(lmdb.Error):
        lmdbenv.open_env(tmp_path / "missing", Options())


def test_open_env_create_makes_directory(tmp_path):
    path = tmp_path / "a" / "b"
    env = lmdbenv.open_env(path, Options(create=True))
    try:
        assert os.path.isfile(path / "data.mdb")
        assert env.info()["map_size"] == lmdbenv.DEFAULT_MAP_SIZE
    finally:
        env.close()


def test_open_env_no_subdir(tmp_path):
    path = tmp_path / "sub" / "db.mdb"
    env = lmdbenv.open_env(path, Options(create=True, no_subdir=True))
    try:
        assert env.flags()["subdir"] is False
        assert os.path.isfile(path)
        assert env.info()["map_size"] == lmdbenv.DEFAULT_MAP_SIZE
    finally:
        env.close()