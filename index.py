# Copyright 2024 wyj
# Copyright 2025 Stephen Karl Larroque <lrq3000>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import sys
import base64
import binascii
import sqlite3
import argparse
import logging
from bs4 import BeautifulSoup, Doctype

from bookmark_store import BookmarkStore, PersistenceError
from config import DEFAULT_CONFIG_PATH, load_config, resolve_db_path, setup_logging

logger = logging.getLogger(__name__)

NETSCAPE_DOCTYPE = "netscape-bookmark-file-1"
PNG_DATA_PREFIX = "data:image/png;base64,"


class InvalidBookmarkFile(ValueError):
    pass


def decode_icon(value):
    """Decode a base64 PNG data URI icon, None for anything else."""
    if not value or not value.startswith(PNG_DATA_PREFIX):
        return None
    try:
        return base64.b64decode(value[len(PNG_DATA_PREFIX):], validate=True)
    except (binascii.Error, ValueError):
        return None


def get_bookmarks(html):
    """
    Parse a Netscape bookmark export (as written by every major browser).

    Only anchors pointing to http(s) pages are kept.

    Parameters:
        html (str): Content of the exported bookmarks file

    Returns:
        list: Entry dicts with 'title', 'href', 'date' (Unix seconds) and 'icon' (bytes or None)
    """
    soup = BeautifulSoup(html, "html.parser")

    doctype = next((item for item in soup.contents if isinstance(item, Doctype)), "")
    doctype = doctype.strip().lower()
    if doctype.startswith("doctype "):
        doctype = doctype[len("doctype "):].strip()
    if doctype != NETSCAPE_DOCTYPE:
        raise InvalidBookmarkFile("Bookmark file is not a valid netscape bookmark html file.")

    bookmarks = []
    for anchor in soup.find_all("a"):
        href = anchor.get("href", "")
        if not href.startswith("http"):
            continue

        try:
            date = int(anchor.get("add_date", 0))
        except ValueError:
            date = 0

        bookmarks.append({
            "title": anchor.get_text(),
            "href": href,
            "date": date,
            "icon": decode_icon(anchor.get("icon")),
        })
    return bookmarks


def import_bookmarks(store, path):
    """
    Import an exported bookmarks file into the store, in a single transaction.

    Bookmarks whose URL is already stored are skipped, so importing the same file
    twice is harmless.

    Returns:
        tuple: (number of inserted bookmarks, number of already known bookmarks)
    """
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        bookmarks = get_bookmarks(f.read())

    store.init()
    inserted = 0
    with store.transaction():
        for bookmark in bookmarks:
            if store.insert(bookmark) is not None:
                inserted += 1

    return inserted, len(bookmarks) - inserted


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Import a bookmark html file exported from a browser')
    parser.add_argument('file', help='Netscape bookmark html file')
    parser.add_argument('--db', type=str, help='Path to the SQLite database (default: BOOKMARKS_DB or ./bookmarks.db)')
    parser.add_argument('--config', type=str, default=DEFAULT_CONFIG_PATH, help=f'Path to the TOML configuration file (default: {DEFAULT_CONFIG_PATH})')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config_data = load_config(args.config)
    setup_logging(config_data)
    db_path = resolve_db_path(config_data, args.db)

    try:
        with BookmarkStore(db_path) as store:
            inserted, known = import_bookmarks(store, args.file)
    except (OSError, InvalidBookmarkFile, PersistenceError, sqlite3.Error) as e:
        logger.critical(f"Import failed: {e}")
        return 1

    print(f"Imported {inserted} bookmarks into {db_path}, {known} were already known")
    return 0


if __name__ == "__main__":
    sys.exit(main())
