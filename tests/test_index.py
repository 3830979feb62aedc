#!/usr/bin/env python3
"""
Tests for importing a browser bookmark export into the store.
"""

import os
import sys
import base64
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import index
from bookmark_store import BookmarkStore

BOOKMARKS_FILE = os.path.join(os.path.dirname(__file__), 'bookmarks-test.html')


@pytest.fixture
def store(tmp_path):
    store = BookmarkStore(str(tmp_path / "bookmarks.db"))
    yield store
    store.close()


def test_get_bookmarks_keeps_http_links_only():
    with open(BOOKMARKS_FILE, encoding='utf-8') as f:
        bookmarks = index.get_bookmarks(f.read())

    assert len(bookmarks) == 59
    assert all(b['href'].startswith('http') for b in bookmarks)

    first = bookmarks[0]
    assert first['title'] == 'How to send HTTP request GET/POST in Java – Mkyong.com'
    assert first['href'] == 'https://www.mkyong.com/java/how-to-send-http-request-getpost-in-java/'
    assert first['date'] == 1533841718
    assert first['icon'].startswith(b'\x89PNG')


def test_import_bookmarks(store):
    inserted, known = index.import_bookmarks(store, BOOKMARKS_FILE)
    assert (inserted, known) == (59, 0)
    assert store.count() == 59

    row = store.conn.execute("SELECT * FROM bookmark ORDER BY id LIMIT 1").fetchone()
    assert row['title'] == 'How to send HTTP request GET/POST in Java – Mkyong.com'
    assert row['href'] == 'https://www.mkyong.com/java/how-to-send-http-request-getpost-in-java/'
    assert row['date'] == '2018-08-09 19:08:38'
    assert row['icon'].startswith(b'\x89PNG')
    assert row['content'] is None


def test_import_twice_is_idempotent(store):
    index.import_bookmarks(store, BOOKMARKS_FILE)
    inserted, known = index.import_bookmarks(store, BOOKMARKS_FILE)
    assert (inserted, known) == (0, 59)
    assert store.count() == 59


def test_invalid_file(store, tmp_path):
    path = tmp_path / "not-bookmarks.html"
    path.write_text("<!DOCTYPE html><html><body><a href='https://example.com'>x</a></body></html>", encoding='utf-8')
    with pytest.raises(index.InvalidBookmarkFile):
        index.import_bookmarks(store, str(path))

    path.write_text("<a href='https://example.com'>x</a>", encoding='utf-8')
    with pytest.raises(index.InvalidBookmarkFile):
        index.import_bookmarks(store, str(path))


def test_decode_icon():
    png = b'\x89PNG\r\n\x1a\n'
    assert index.decode_icon('data:image/png;base64,' + base64.b64encode(png).decode()) == png
    assert index.decode_icon('data:image/gif;base64,R0lGODlhAQABAAAAACw=') is None
    assert index.decode_icon('data:image/png;base64,not base64!') is None
    assert index.decode_icon(None) is None


def test_main(tmp_path, capsys):
    db_path = str(tmp_path / "cli.db")
    assert index.main([BOOKMARKS_FILE, '--db', db_path, '--config', str(tmp_path / 'missing.toml')]) == 0
    assert 'Imported 59 bookmarks' in capsys.readouterr().out

    with BookmarkStore(db_path) as store:
        assert store.count() == 59


def test_main_missing_file(tmp_path):
    assert index.main([str(tmp_path / 'nope.html'), '--db', str(tmp_path / 'cli.db'), '--config', str(tmp_path / 'missing.toml')]) == 1
