#!/usr/bin/env python3
"""
Tests for configuration loading and layering.
"""

import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import config
from config import FetchConfig, load_config, resolve_db_path

DEFAULT_CONFIG_FILE = os.path.join(os.path.dirname(__file__), '..', 'default_config.toml')


def test_defaults():
    fetch_config = FetchConfig()
    assert fetch_config.threads == 6
    assert fetch_config.retries == 2
    assert fetch_config.timeout == 10
    assert fetch_config.retry_interval == 3.0
    assert fetch_config.retry_slots == 1
    assert not fetch_config.overwrite
    assert not fetch_config.outdated_only
    assert not fetch_config.uncached_only
    assert fetch_config.parsers is None
    assert fetch_config.early_release


def test_shipped_config_matches_defaults():
    fetch_config = FetchConfig(load_config(DEFAULT_CONFIG_FILE))
    assert repr(fetch_config) == repr(FetchConfig())


def test_overrides_take_precedence():
    config_data = {"fetch": {"threads": 3, "retries": 5, "uncached_only": True, "parsers": "reddit | youtube"}}
    fetch_config = FetchConfig(config_data, threads=8, retries=None, overwrite=True)
    assert fetch_config.threads == 8
    assert fetch_config.retries == 5
    assert fetch_config.overwrite
    assert fetch_config.uncached_only
    assert not fetch_config.early_release
    assert fetch_config.parsers == ["reddit", "youtube"]


def test_bounds():
    fetch_config = FetchConfig({"fetch": {"threads": 0, "retries": 0, "retry_slots": 0}})
    assert (fetch_config.threads, fetch_config.retries, fetch_config.retry_slots) == (1, 1, 1)


def test_load_config_missing_or_invalid(tmp_path):
    assert load_config(str(tmp_path / "missing.toml")) == {}
    bad = tmp_path / "bad.toml"
    bad.write_text("[fetch\nthreads = ", encoding="utf-8")
    assert load_config(str(bad)) == {}


def test_resolve_db_path(monkeypatch):
    monkeypatch.delenv("BOOKMARKS_DB", raising=False)
    assert resolve_db_path({}, None) == config.bookmark_store.bookmark_store_path
    assert resolve_db_path({"store": {"path": "from_file.db"}}, None) == "from_file.db"

    monkeypatch.setenv("BOOKMARKS_DB", "from_env.db")
    assert resolve_db_path({"store": {"path": "from_file.db"}}, None) == "from_env.db"
    assert resolve_db_path({"store": {"path": "from_file.db"}}, "from_cli.db") == "from_cli.db"
