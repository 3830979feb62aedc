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
import time
import sqlite3
import argparse
import logging

from bookmark_store import BookmarkStore
from config import DEFAULT_CONFIG_PATH, load_config, resolve_db_path, setup_logging

logger = logging.getLogger(__name__)


def format_search_time(seconds):
    """Format search time in seconds to a human readable string."""
    if seconds < 1:
        return f"{seconds * 1000:.0f} ms"
    return f"{seconds:.2f} s"


def search_bookmarks(store, query_str, limit=None):
    """
    Search the full-text index.

    Parameters:
        store (BookmarkStore): Store to query
        query_str (str or list): Search terms; a bookmark must contain all of them
        limit (int): Maximum number of results, None for all

    Returns:
        list: SearchResult tuples, best match first
    """
    results = store.search(query_str)
    if limit:
        results = results[:limit]
    return results


def print_results(results, elapsed=None):
    found = f"Found {len(results)} search results!"
    if elapsed is not None:
        found += f" ({format_search_time(elapsed)})"
    print(found + "\n")
    for result in results:
        print(f"{result.id}. {result.title}")
        print(result.href)
        print(f"\"{result.snippet}\"\n")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Full-text search in bookmarked pages')
    parser.add_argument('terms', nargs='+', help='Search terms (at least 3 characters each)')
    parser.add_argument('--limit', type=int, help='Maximum number of results')
    parser.add_argument('--db', type=str, help='Path to the SQLite database (default: BOOKMARKS_DB or ./bookmarks.db)')
    parser.add_argument('--config', type=str, default=DEFAULT_CONFIG_PATH, help=f'Path to the TOML configuration file (default: {DEFAULT_CONFIG_PATH})')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config_data = load_config(args.config)
    setup_logging(config_data, log_file="")
    db_path = resolve_db_path(config_data, args.db)

    start = time.time()
    try:
        with BookmarkStore(db_path) as store:
            store.init()
            results = search_bookmarks(store, args.terms, limit=args.limit)
    except sqlite3.Error as e:
        logger.critical(f"Search failed: {e}")
        return 1

    print_results(results, time.time() - start)
    return 0


if __name__ == "__main__":
    sys.exit(main())
