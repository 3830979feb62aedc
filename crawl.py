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

import requests
from bs4 import BeautifulSoup
import sys
import time
import queue
import sqlite3
import argparse
import threading
import logging
import email.utils
from datetime import timezone
from collections import namedtuple, Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from requests.adapters import HTTPAdapter
import urllib3
import chardet
from tqdm import tqdm

from bookmark_store import BookmarkStore, PersistenceError
from change_detector import HTTP_NOT_MODIFIED, detect_change, reset_signals
from config import DEFAULT_CONFIG_PATH, FetchConfig, load_config, resolve_db_path, setup_logging
from site_strategies import StrategyRegistry, load_custom_parsers, standardize_spaces

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"

# Elements that never hold readable page text
NON_TEXT_ELEMENTS = ['script', 'style', 'noscript', 'template', 'svg', 'nav', 'footer', 'header', 'meta', 'link']

# Minimum chardet confidence to trust the detected encoding
ENCODING_CONFIDENCE = 0.7
ENCODING_SAMPLE_SIZE = 100_000

# Terminal states of a fetch worker
WRITTEN = "written"
UNCHANGED = "unchanged"
EXHAUSTED = "exhausted"
FAILED = "failed"


class FetchError(Exception):
    """A failed fetch attempt. Retried up to the configured budget, then the bookmark is skipped."""


class TransientNetworkError(FetchError):
    """Connection, DNS, TLS or timeout failure."""


class PermanentHTTPError(FetchError):
    """The server answered with a status other than 2xx or 304."""

    def __init__(self, status_code, url):
        super().__init__(f"returned status code {status_code} for {url}")
        self.status_code = status_code
        self.url = url


class ExtractionError(Exception):
    """The fetched page could not be turned into text."""


FetchResponse = namedtuple("FetchResponse", ["status", "last_modified", "body", "encoding"], defaults=(None,))
ContentUpdate = namedtuple("ContentUpdate", ["id", "title", "href", "content", "content_hash", "modified", "version"])
FetchOutcome = namedtuple("FetchOutcome", ["id", "title", "href", "state", "reason"])


# Create a session shared by all fetch workers of a batch
def create_session(pool_size=10):
    """
    Create a requests session for fetching bookmarks.

    Retries are driven by the fetch workers themselves, so the adapter does not retry.
    Certificate validation is disabled: bookmarks often point at hosts with expired
    or self-signed certificates and their content is still worth indexing.
    """
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    session = requests.Session()
    session.verify = False
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=0)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def format_http_date(timestamp):
    return email.utils.formatdate(timestamp, usegmt=True)


def parse_last_modified(value):
    """
    Convert a Last-Modified header to Unix seconds.

    A missing or unparsable header yields the current time, so that the content
    hash decides whether the page changed.
    """
    if value:
        try:
            modified = email.utils.parsedate_to_datetime(value)
            if modified.tzinfo is None:
                modified = modified.replace(tzinfo=timezone.utc)
            return int(modified.timestamp())
        except (TypeError, ValueError, IndexError):
            logger.debug(f"Unparsable Last-Modified header: {value!r}")
    return int(time.time())


# Fetch one bookmark with a conditional GET
def fetch_website(session, href, if_modified_since=0, timeout=10, registry=None):
    """
    Perform one conditional GET for a bookmark.

    Parameters:
        session (requests.Session): Session to send the request with
        href (str): Bookmark URL, rewritten by the matching site strategy if any
        if_modified_since (int): Stored Last-Modified in Unix seconds, 0 to fetch unconditionally
        timeout (float): Request timeout in seconds
        registry (StrategyRegistry): Site strategies for URL rewriting and extra headers

    Returns:
        FetchResponse: status, Last-Modified (Unix seconds), body and declared encoding.
                       A 304 answer has no body and keeps if_modified_since.

    Raises:
        TransientNetworkError: If the request did not complete
        PermanentHTTPError: If the status is neither 2xx nor 304
    """
    url = registry.rewrite_url(href) if registry is not None else href
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/json;q=0.8,*/*;q=0.7",
        "Accept-Language": "en-US,en;q=0.9",
    }
    if registry is not None:
        registry.inject_headers(headers, href)
    if if_modified_since:
        headers["If-Modified-Since"] = format_http_date(if_modified_since)

    try:
        response = session.get(url, headers=headers, timeout=timeout, verify=False)
    except requests.RequestException as e:
        raise TransientNetworkError(f"Request failed: {e}") from e

    try:
        if response.status_code == HTTP_NOT_MODIFIED:
            return FetchResponse(HTTP_NOT_MODIFIED, if_modified_since, None)

        if not 200 <= response.status_code < 300:
            raise PermanentHTTPError(response.status_code, url)

        body = response.content
    except requests.RequestException as e:
        raise TransientNetworkError(f"Reading response failed: {e}") from e
    finally:
        response.close()

    modified = parse_last_modified(response.headers.get("Last-Modified"))
    return FetchResponse(response.status_code, modified, body, response.encoding)


def is_possibly_blocked(error):
    """Tell whether a fetch error looks like the peer resetting the connection (firewall, anti-bot)."""
    pending = [error]
    seen = set()
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))

        if isinstance(current, ConnectionResetError):
            return True
        message = str(current).lower()
        if "forcibly closed" in message or "connection reset" in message:
            return True

        linked = [current.__cause__, current.__context__, getattr(current, "reason", None)]
        linked.extend(getattr(current, "args", ()))
        pending.extend(item for item in linked if isinstance(item, BaseException))
    return False


def decode_body(body, declared_encoding=None):
    """Decode a response body, preferring a confident chardet guess over the declared charset."""
    if not body:
        return ""
    encoding = None
    detected = chardet.detect(body[:ENCODING_SAMPLE_SIZE])
    if detected.get('encoding') and (detected.get('confidence') or 0) > ENCODING_CONFIDENCE:
        encoding = detected['encoding']
    encoding = encoding or declared_encoding or 'utf-8'
    try:
        return body.decode(encoding, errors='replace')
    except LookupError:
        return body.decode('utf-8', errors='replace')


def html_to_text(html):
    """
    Generic conversion of a page to readable text.

    Scripts, styles and page chrome are removed; link targets and table layout are
    dropped, only the visible text is kept, with whitespace standardized.
    """
    try:
        soup = BeautifulSoup(html, "html.parser")
        for element in soup(NON_TEXT_ELEMENTS):
            element.decompose()
        text = soup.get_text(separator=' ')
    except Exception as e:
        raise ExtractionError(f"Error converting website to text: {e}") from e
    return standardize_spaces(text)


def extract_text(body, href, registry=None, declared_encoding=None):
    """
    Turn a fetched body into the text to index.

    The matching site strategy is tried first; without one, or when it finds
    nothing, the page goes through html_to_text.

    Raises:
        ExtractionError: If neither the strategy nor the generic conversion succeeded
    """
    html = decode_body(body, declared_encoding)
    if registry is not None:
        try:
            text, matched = registry.extract(html, href)
        except Exception as e:
            raise ExtractionError(f"Site strategy failed: {e}") from e
        if matched:
            return text
    return html_to_text(html)


class SlotLease:
    """The slot held by one fetch worker; see ElasticSlots."""

    FOREGROUND = "foreground"
    BACKGROUND = "background"
    RELEASED = "released"

    def __init__(self, slots):
        self.slots = slots
        self.tier = self.FOREGROUND

    def downgrade(self):
        """
        Trade the foreground slot for a background one.

        Returns:
            bool: True if the foreground slot was given back to the scheduler
        """
        if not self.slots.early_release or self.tier != self.FOREGROUND:
            return False
        self.tier = self.RELEASED
        self.slots.foreground.release()
        self.slots.background.acquire()
        self.tier = self.BACKGROUND
        return True

    def release(self):
        if self.tier == self.FOREGROUND:
            self.slots.foreground.release()
        elif self.tier == self.BACKGROUND:
            self.slots.background.release()
        self.tier = self.RELEASED


class ElasticSlots:
    """
    Two-tier concurrency bound for fetch workers.

    The scheduler acquires a foreground slot before dispatching each bookmark. A
    worker that has to retry gives its foreground slot back and continues in one of
    the background slots, so a slow or failing host does not keep the scheduler
    from starting the next bookmark. At most foreground + background workers fetch
    at once, exactly foreground when early release is disabled.
    """

    def __init__(self, foreground, background=1, early_release=True):
        self.foreground = threading.BoundedSemaphore(foreground)
        self.background = threading.BoundedSemaphore(background)
        self.early_release = early_release

    def acquire(self):
        self.foreground.acquire()
        return SlotLease(self)


class ContentWriter(threading.Thread):
    """
    Single thread applying content updates to the store.

    Workers never touch the database: they submit ContentUpdate items, which this
    thread executes one after the other inside the batch transaction. The update
    statement is prepared on construction so that a broken store aborts the batch
    before any worker starts.
    """

    def __init__(self, store):
        super().__init__(name="content-writer", daemon=True)
        self.store = store
        self.queue = queue.Queue()
        self.written = 0
        self.failures = []
        store.prepare_content_update()

    def submit(self, update):
        self.queue.put(update)

    def run(self):
        while True:
            update = self.queue.get()
            if update is None:
                break
            try:
                changed = self.store.update_content(update.id, update.content, update.content_hash, update.modified, update.version)
            except Exception as e:
                logger.error(f"{update.id}. Error storing {update.title!r}: {e}")
                self.failures.append((update.id, update.title, update.href, f"Storing content failed: {e}"))
                continue
            if changed:
                self.written += 1
            else:
                logger.error(f"{update.id}. Bookmark {update.title!r} vanished before its content was stored")
                self.failures.append((update.id, update.title, update.href, "Bookmark row not found"))

    def close(self):
        """Flush every pending update and stop the thread."""
        self.queue.put(None)
        self.join()


class FetchReport:
    """Outcome of a fetch batch: counts per terminal state and the failed items."""

    def __init__(self, total=0):
        self.total = total
        self.counts = Counter()
        self.failures = []
        self.elapsed = 0.0

    def record(self, outcome):
        self.counts[outcome.state] += 1
        if outcome.state in (EXHAUSTED, FAILED):
            self.failures.append(outcome)

    def record_write_failure(self, bookmark_id, title, href, reason):
        self.counts[WRITTEN] -= 1
        self.counts[FAILED] += 1
        self.failures.append(FetchOutcome(bookmark_id, title, href, FAILED, reason))

    @property
    def written(self):
        return self.counts[WRITTEN]

    @property
    def unchanged(self):
        return self.counts[UNCHANGED]

    @property
    def exhausted(self):
        return self.counts[EXHAUSTED]

    @property
    def failed(self):
        return self.counts[FAILED]


def fetch_with_retries(candidate, lease, session, config, registry, fetcher):
    """
    Run the attempt/retry loop for one bookmark.

    The second attempt starts after config.retry_interval seconds and gives the
    foreground slot back to the scheduler (early release).

    Raises:
        FetchError: The last error once config.retries attempts failed
    """
    attempt = 0
    while True:
        attempt += 1
        if attempt > 1:
            time.sleep(config.retry_interval)
            if attempt == 2 and lease.downgrade():
                logger.debug(f"{candidate.id}. Released fetch slot while retrying {candidate.title!r}")

        try:
            return fetcher(session, candidate.href, candidate.last_modified, config.timeout, registry)
        except FetchError as e:
            if is_possibly_blocked(e):
                logger.warning(f"{candidate.id}. Possibly blocked by a firewall? {candidate.title!r}: {e}")
            else:
                logger.warning(f"{candidate.id}. Error fetching {candidate.title!r} (attempt {attempt}/{config.retries}): {e}")
            if attempt >= config.retries:
                raise


def process_bookmark(candidate, lease, writer, config, registry, session, fetcher=None):
    """
    Fetch worker: fetch one bookmark, detect change, extract text and queue the update.

    Never raises: every per-item failure is logged and returned as an outcome.
    The slot lease is released when the worker ends.

    Returns:
        FetchOutcome: state is one of WRITTEN, UNCHANGED, EXHAUSTED or FAILED
    """
    fetcher = fetcher or fetch_website

    def outcome(state, reason=""):
        return FetchOutcome(candidate.id, candidate.title, candidate.href, state, reason)

    try:
        try:
            response = fetch_with_retries(candidate, lease, session, config, registry, fetcher)
        except FetchError as e:
            logger.error(f"{candidate.id}. Could not fetch {candidate.title!r}: {e}")
            return outcome(EXHAUSTED, str(e))

        decision = detect_change(candidate.hash, candidate.last_modified, response.status, response.last_modified, response.body)
        if not decision.changed:
            logger.info(f"{candidate.id}. Not modified {candidate.title!r} ({decision.reason})")
            return outcome(UNCHANGED, decision.reason)

        logger.info(f"{candidate.id}. Fetched {candidate.title!r} successfully")
        try:
            text = extract_text(response.body, candidate.href, registry, response.encoding)
        except ExtractionError as e:
            logger.error(f"{candidate.id}. {e} ({candidate.title!r})")
            return outcome(FAILED, str(e))

        version = registry.version_for(candidate.href) if registry is not None else 0
        writer.submit(ContentUpdate(candidate.id, candidate.title, candidate.href, text, decision.content_hash, response.last_modified, version))
        return outcome(WRITTEN)
    except Exception as e:
        logger.exception(f"{candidate.id}. Unexpected error processing {candidate.title!r}: {e}")
        return outcome(FAILED, f"Unexpected error: {e}")
    finally:
        lease.release()


# Parallel refresh of bookmark content
def parallel_fetch_bookmarks(store, candidates, config=None, registry=None, fetcher=None, session=None, show_progress=True):
    """
    Refresh many bookmarks concurrently and persist the changes in one transaction.

    Parameters:
        store (BookmarkStore): Initialized store the candidates were read from
        candidates (list): FetchCandidate objects
        config (FetchConfig): Concurrency, retry and caching settings
        registry (StrategyRegistry): Site strategies
        fetcher (callable): Replacement for fetch_website, same signature
        session (requests.Session): Session to use, one is created when None
        show_progress (bool): Display a tqdm progress bar

    Returns:
        FetchReport: Per-state counts and failed items

    Raises:
        PersistenceError: If the batch transaction cannot begin, be prepared or commit
    """
    config = config or FetchConfig()
    registry = registry if registry is not None else StrategyRegistry()

    if config.outdated_only:
        candidates = [candidate for candidate in candidates if candidate.outdated]
    for candidate in candidates:
        if config.overwrite or candidate.outdated:
            reset_signals(candidate)

    report = FetchReport(total=len(candidates))
    if not candidates:
        logger.info("No bookmarks to fetch")
        return report

    slots = ElasticSlots(config.threads, config.retry_slots, early_release=config.early_release)
    own_session = session is None
    if own_session:
        session = create_session(pool_size=config.threads + config.retry_slots)

    start_time = time.time()
    logger.info(f"Starting parallel fetch of {len(candidates)} bookmarks, max workers: {config.threads}")
    try:
        with store.transaction():
            writer = ContentWriter(store)
            writer.start()
            try:
                # Slots bound the concurrency; the pool only needs a thread per running worker
                with ThreadPoolExecutor(max_workers=len(candidates)) as executor:
                    futures = []
                    for candidate in candidates:
                        lease = slots.acquire()
                        futures.append(executor.submit(process_bookmark, candidate, lease, writer, config, registry, session, fetcher))

                    for future in tqdm(as_completed(futures), total=len(futures), desc="Fetch Progress", disable=not show_progress):
                        report.record(future.result())
            finally:
                writer.close()

            for failure in writer.failures:
                report.record_write_failure(*failure)
    finally:
        if own_session:
            session.close()

    report.elapsed = time.time() - start_time
    logger.info(f"Total time for parallel fetch: {report.elapsed:.2f} seconds")
    return report


def print_report(report):
    print(f"Fetched {report.total} bookmarks in {report.elapsed:.2f} seconds")
    print(f"  - Updated: {report.written}")
    print(f"  - Unchanged: {report.unchanged}")
    print(f"  - Gave up after retries: {report.exhausted}")
    print(f"  - Failed: {report.failed}")

    if report.failures:
        print("\nFailed URLs and Titles:")
        for idx, failure in enumerate(report.failures):
            print(f"{idx+1}. {failure.title} - {failure.href} - Reason: {failure.reason}")


# Parse command-line arguments
def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Re-fetch bookmarked pages and refresh their full-text index')

    # Values left to None fall back to the configuration file, then to the defaults.
    parser.add_argument('--threads', type=int, help=f'Number of concurrent fetches (default: {FetchConfig.DEFAULT_THREADS})')
    parser.add_argument('--retry', type=int, dest='retries', help=f'Number of attempts per bookmark (default: {FetchConfig.DEFAULT_RETRIES})')
    parser.add_argument('--timeout', type=float, help=f'Request timeout in seconds (default: {FetchConfig.DEFAULT_TIMEOUT})')
    parser.add_argument('--retry-interval', type=float, help=f'Seconds to wait before retrying (default: {FetchConfig.DEFAULT_RETRY_INTERVAL})')
    parser.add_argument('--retry-slots', type=int, help=f'Extra slots for bookmarks being retried (default: {FetchConfig.DEFAULT_RETRY_SLOTS})')
    parser.add_argument('--uncached', action='store_true', default=None, dest='uncached_only', help='Fetch uncached bookmarks only')
    parser.add_argument('--overwrite', action='store_true', default=None, help='Ignore Last-Modified and content hashes, store every fetched page')
    parser.add_argument('--outdated', action='store_true', default=None, dest='outdated_only', help='Only refetch bookmarks handled by an outdated site parser')
    parser.add_argument('--parsers', type=str, help='Pipe-delimited list of custom parsers to enable, e.g. "reddit|youtube" (default: all)')
    parser.add_argument('--db', type=str, help='Path to the SQLite database (default: BOOKMARKS_DB or ./bookmarks.db)')
    parser.add_argument('--config', type=str, default=DEFAULT_CONFIG_PATH, help=f'Path to the TOML configuration file (default: {DEFAULT_CONFIG_PATH})')
    parser.add_argument('--log-file', type=str, help='Log file, empty string to disable (default: crawl_errors.log)')
    parser.add_argument('--log-level', type=str, help='Logging level (default: INFO)')
    parser.add_argument('--no-progress', action='store_true', help='Do not display the progress bar')

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    config_data = load_config(args.config)
    setup_logging(config_data, log_file=args.log_file, level=args.log_level)

    config = FetchConfig(
        config_data,
        threads=args.threads,
        retries=args.retries,
        timeout=args.timeout,
        retry_interval=args.retry_interval,
        retry_slots=args.retry_slots,
        overwrite=args.overwrite,
        outdated_only=args.outdated_only,
        uncached_only=args.uncached_only,
        parsers=args.parsers,
    )
    registry = load_custom_parsers(parser_filter=config.parsers)
    db_path = resolve_db_path(config_data, args.db)

    print("Configuration:")
    print(f"  - Database: {db_path}")
    print(f"  - Parallel Workers: {config.threads} (+{config.retry_slots} for retries)" if config.early_release else f"  - Parallel Workers: {config.threads}")
    print(f"  - Attempts per bookmark: {config.retries}")
    print(f"  - Timeout: {config.timeout} seconds")
    print(f"  - Site parsers: {', '.join(registry.names) or 'None'}")
    logger.warning("TLS certificate verification is disabled for bookmark fetches")

    start = time.time()
    try:
        with BookmarkStore(db_path) as store:
            store.init()
            candidates = store.fetch_candidates(uncached_only=config.uncached_only, registry=registry)
            report = parallel_fetch_bookmarks(store, candidates, config, registry, show_progress=not args.no_progress)
    except (PersistenceError, sqlite3.Error) as e:
        logger.critical(f"Fetch aborted: {e}")
        return 1

    print_report(report)
    logger.info(f"finished task in {time.time() - start:.2f} seconds!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
