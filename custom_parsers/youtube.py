import re
import json

# YouTube video pages are not crawlable: the useful text is the video description
# embedded in the page's player response.
PATTERN = r'^https://(?:www\.)?(?:youtube\.com/watch\?v=|youtu\.be/)'

VERSION = 0

_description_re = re.compile(r'"shortDescription":"((?:[^"\\]|\\.)*)"')


def extract(raw_body: str, href: str):
    """
    Extract the description of a YouTube video.

    Parameters:
        raw_body (str): HTML of the watch page
        href (str): Bookmark URL

    Returns:
        str: The shortDescription field, or None when the page has none.
    """
    match = _description_re.search(raw_body)
    if not match:
        return None

    description = match.group(1)
    try:
        # The field is a JSON string literal; decode its escapes (\n, &, ...)
        return json.loads(f'"{description}"')
    except ValueError:
        return description
