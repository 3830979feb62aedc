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

import sqlite3
import logging
import contextlib
from collections import namedtuple
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Default location of the SQLite database, overridable with BOOKMARKS_DB or --db
bookmark_store_path = "./bookmarks.db"

# SQLite primary result code of constraint violations (UNIQUE is 2067 = 19 | 8 << 8)
SQLITE_CONSTRAINT = 19

SCHEMA = """
CREATE TABLE IF NOT EXISTS bookmark (
    id integer not null primary key,
    title text,
    href text unique not null,
    date timestamp not null,
    icon blob,
    content text,
    hash integer not null default 0,
    modified timestamp not null default (datetime(0, 'unixepoch')),
    version integer not null default 0,
    created_at timestamp not null default current_timestamp,
    updated_at timestamp not null default current_timestamp
);

CREATE VIRTUAL TABLE IF NOT EXISTS bookmark_fts USING fts5 (
    title,
    href,
    content,
    content=bookmark,
    content_rowid=id,
    tokenize="trigram"
);

CREATE TRIGGER IF NOT EXISTS bookmark_fts_insert AFTER INSERT ON bookmark
BEGIN
    INSERT INTO bookmark_fts (rowid, title, href, content)
    VALUES (new.id, new.title, new.href, new.content);
END;

CREATE TRIGGER IF NOT EXISTS bookmark_fts_delete AFTER DELETE ON bookmark
BEGIN
    INSERT INTO bookmark_fts (bookmark_fts, rowid, title, href, content)
    VALUES ('delete', old.id, old.title, old.href, old.content);
END;

-- Indexed columns only: the updated_at touch below must not reach the mirror
CREATE TRIGGER IF NOT EXISTS bookmark_fts_update AFTER UPDATE OF title, href, content ON bookmark
BEGIN
    INSERT INTO bookmark_fts (bookmark_fts, rowid, title, href, content)
    VALUES ('delete', old.id, old.title, old.href, old.content);
    INSERT INTO bookmark_fts (rowid, title, href, content)
    VALUES (new.id, new.title, new.href, new.content);
END;

CREATE TRIGGER IF NOT EXISTS bookmark_updated_trigger
AFTER UPDATE OF title, href, date, icon, content, hash, modified, version ON bookmark
BEGIN
    UPDATE bookmark SET updated_at = current_timestamp WHERE id = new.id;
END;
"""

INSERT_SQL = """
INSERT INTO bookmark (title, href, date, icon)
VALUES (?, ?, datetime(?, 'unixepoch'), ?)
"""

UPDATE_CONTENT_SQL = """
UPDATE bookmark SET
    content = ?, hash = ?, modified = datetime(?, 'unixepoch'), version = ?
WHERE id = ?
"""

CANDIDATES_SQL = """
SELECT id, title, href, hash, CAST(strftime('%s', modified) AS integer) AS modified, version
FROM bookmark {where} ORDER BY RANDOM()
"""

SEARCH_SQL = """
SELECT rowid, title, href, snippet(bookmark_fts, 2, ?, ?, '...', 64)
FROM bookmark_fts WHERE bookmark_fts MATCH ? ORDER BY rank
"""


class PersistenceError(Exception):
    """A batch-level storage failure: the run cannot continue."""


@dataclass
class FetchCandidate:
    """A bookmark selected for refreshing. Never persisted as such."""
    id: int
    title: str
    href: str
    hash: int = 0
    last_modified: int = 0
    version: int = 0
    outdated: bool = False


SearchResult = namedtuple("SearchResult", ["id", "title", "href", "snippet"])


def is_duplicate_href(error):
    """
    Tell whether an IntegrityError is the href uniqueness violation.

    Parameters:
        error (sqlite3.Error): Error raised by an insert statement

    Returns:
        bool: True for a UNIQUE constraint failure on bookmark.href
    """
    if not isinstance(error, sqlite3.IntegrityError):
        return False
    code = getattr(error, "sqlite_errorcode", None)
    if code is not None and code & 0xff != SQLITE_CONSTRAINT:
        return False
    message = str(error)
    return "UNIQUE" in message and "bookmark.href" in message


def quote_tokens(tokens):
    """Quote every search token as an FTS5 phrase so user input cannot break the query syntax."""
    if isinstance(tokens, str):
        tokens = tokens.split()
    return " ".join('"' + token.replace('"', '""') + '"' for token in tokens if token)


class BookmarkStore:
    """
    SQLite storage for bookmarks and their FTS5 full-text mirror.

    The mirror table is written only by the triggers created in init(), so every
    insert, update or delete of a bookmark row keeps it consistent within the same
    transaction. The connection runs in autocommit mode; batches are grouped
    explicitly with transaction().
    """

    def __init__(self, path=None, timeout=30.0):
        self.path = path or bookmark_store_path
        # The connection is shared with the writer thread of a fetch batch.
        self.conn = sqlite3.connect(self.path, timeout=timeout, isolation_level=None, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._update_cursor = None

    def close(self):
        try:
            self.conn.close()
        except sqlite3.Error as e:
            logger.error(f"Error closing database {self.path}: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def init(self):
        """Create the table, the full-text mirror and the triggers if they do not exist yet."""
        self.conn.executescript(SCHEMA)
        logger.debug(f"Initialized bookmark store at {self.path}")

    @contextlib.contextmanager
    def transaction(self):
        """
        Group every statement of the block into one transaction.

        Commits when the block exits normally and rolls back when it raises.
        Failing to begin or to commit raises PersistenceError.
        """
        try:
            self.conn.execute("BEGIN")
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot begin transaction: {e}") from e

        try:
            yield self
        except BaseException:
            try:
                self.conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.error(f"Rollback failed: {e}")
            raise
        finally:
            self._update_cursor = None

        try:
            self.conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot commit transaction: {e}") from e

    def insert(self, entry):
        """
        Insert one bookmark entry.

        Parameters:
            entry (dict): Entry with 'title', 'href', 'date' (Unix seconds) and 'icon' (bytes or None)

        Returns:
            int: The new row id, or None when the href is already known
        """
        try:
            cursor = self.conn.execute(
                INSERT_SQL,
                (entry.get("title"), entry["href"], int(entry.get("date") or 0), entry.get("icon")),
            )
        except sqlite3.IntegrityError as e:
            if is_duplicate_href(e):
                logger.debug(f"Bookmark already known, skipping: {entry['href']}")
                return None
            raise
        return cursor.lastrowid

    def fetch_candidates(self, uncached_only=False, registry=None):
        """
        Read the bookmarks to refresh, in random order.

        Parameters:
            uncached_only (bool): Only return bookmarks that were never fetched successfully
            registry (StrategyRegistry): Used to flag rows whose extractor version is outdated

        Returns:
            list: FetchCandidate objects
        """
        where = "WHERE content IS NULL" if uncached_only else ""
        rows = self.conn.execute(CANDIDATES_SQL.format(where=where)).fetchall()

        candidates = []
        for row in rows:
            candidate = FetchCandidate(
                id=row["id"],
                title=row["title"],
                href=row["href"],
                hash=row["hash"],
                last_modified=row["modified"] or 0,
                version=row["version"],
            )
            if registry is not None:
                candidate.outdated = registry.is_outdated(candidate.href, candidate.version)
            candidates.append(candidate)
        return candidates

    def prepare_content_update(self):
        """
        Compile the content update statement for the current batch.

        Raises:
            PersistenceError: If the statement cannot be prepared
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute("EXPLAIN " + UPDATE_CONTENT_SQL, ("", 0, 0, 0, 0))
            cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot prepare content update statement: {e}") from e
        self._update_cursor = cursor
        return cursor

    def update_content(self, bookmark_id, content, content_hash, modified, version=0):
        """
        Store freshly extracted content for one bookmark.

        Parameters:
            bookmark_id (int): Row id
            content (str): Normalized text
            content_hash (int): Signed 64-bit hash of the fetched bytes
            modified (int): Last-Modified of the page, in Unix seconds
            version (int): Extractor version that produced the content

        Returns:
            int: Number of rows changed
        """
        cursor = self._update_cursor or self.conn.cursor()
        cursor.execute(UPDATE_CONTENT_SQL, (content, content_hash, int(modified), version, bookmark_id))
        return cursor.rowcount

    def delete(self, bookmark_id):
        cursor = self.conn.execute("DELETE FROM bookmark WHERE id = ?", (bookmark_id,))
        return cursor.rowcount

    def get(self, bookmark_id):
        """Return one bookmark row as a dict, or None."""
        row = self.conn.execute(
            "SELECT id, title, href, date, icon, content, hash, "
            "CAST(strftime('%s', modified) AS integer) AS modified, version, created_at, updated_at "
            "FROM bookmark WHERE id = ?",
            (bookmark_id,),
        ).fetchone()
        return dict(row) if row is not None else None

    def count(self):
        return self.conn.execute("SELECT count(*) FROM bookmark").fetchone()[0]

    def search(self, tokens, highlight=("[", "]")):
        """
        Full-text search over titles, urls and contents.

        Parameters:
            tokens (list or str): Search terms, all of which must match
            highlight (tuple): Markers placed around matched text in the snippet

        Returns:
            list: SearchResult tuples, best match first
        """
        query = quote_tokens(tokens)
        if not query:
            return []
        rows = self.conn.execute(SEARCH_SQL, (highlight[0], highlight[1], query)).fetchall()
        return [SearchResult(row[0], row[1], row[2], row[3]) for row in rows]
