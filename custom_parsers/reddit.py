import re
import json
from urllib.parse import urlsplit, urlunsplit

# Reddit comment threads; anonymous requests get rate limited or a login wall
PATTERN = r'^https://(?:.*\.)?reddit\.com/r/.*/comments/'

# Bump when the extraction below changes so that stored threads are refreshed
VERSION = 2

SESSION_COOKIE = "reddit_session=guest"

# Placeholders reddit leaves in place of removed comments
REMOVED_BODIES = {"[deleted]", "[removed]"}

_body_re = re.compile(r'"body": "(.*?)", "')


def rewrite_url(href: str) -> str:
    """Request the JSON rendering of the thread instead of the HTML page."""
    parts = urlsplit(href)
    path = parts.path.rstrip('/') + '/.json'
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ''))


def inject_headers(headers: dict, href: str) -> None:
    cookie = headers.get("Cookie")
    headers["Cookie"] = f"{cookie}; {SESSION_COOKIE}" if cookie else SESSION_COOKIE


def _collect_bodies(node, bodies):
    if isinstance(node, dict):
        body = node.get("body")
        if isinstance(body, str):
            bodies.append(body)
        for key, value in node.items():
            if key != "body":
                _collect_bodies(value, bodies)
    elif isinstance(node, list):
        for item in node:
            _collect_bodies(item, bodies)


def extract(raw_body: str, href: str) -> str:
    """
    Concatenate every comment body of a thread.

    Parameters:
        raw_body (str): The /.json document of the thread
        href (str): Bookmark URL

    Returns:
        str: Comment bodies joined by a space, without removed placeholders.
             Always a string, so reddit pages never fall back to the generic HTML conversion.
    """
    bodies = []
    try:
        _collect_bodies(json.loads(raw_body), bodies)
    except ValueError:
        # Not JSON (e.g. truncated); scan the raw text instead
        bodies = _body_re.findall(raw_body)

    return " ".join(body for body in bodies if body not in REMOVED_BODIES)
