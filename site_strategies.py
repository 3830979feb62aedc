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

import os
import re
import sys
import logging
import importlib.util
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


# Collapse every run of whitespace into a single space
def standardize_spaces(text):
    return " ".join(text.split())


@dataclass(frozen=True)
class SiteStrategy:
    """
    Specialized handling for one family of URLs.

    rewrite_url(href) returns the URL to request instead of href.
    inject_headers(headers, href) adds headers or cookies to the request headers dict.
    extract(raw_body, href) returns the extracted text, or None to fall back to
    the generic HTML-to-text conversion.
    """
    name: str
    pattern: re.Pattern
    version: int = 0
    rewrite_url: Optional[Callable[[str], str]] = None
    inject_headers: Optional[Callable[[dict, str], None]] = None
    extract: Optional[Callable[[str, str], Optional[str]]] = None

    def matches(self, href):
        return self.pattern.search(href) is not None


class StrategyRegistry:
    """
    Ordered, immutable table of site strategies. The first matching pattern wins.

    Built once at startup and shared read-only between all fetch workers.
    """

    def __init__(self, strategies=()):
        self._strategies = tuple(strategies)

    def __len__(self):
        return len(self._strategies)

    @property
    def names(self):
        return [strategy.name for strategy in self._strategies]

    def match(self, href):
        for strategy in self._strategies:
            if strategy.matches(href):
                return strategy
        return None

    def version_for(self, href):
        strategy = self.match(href)
        return strategy.version if strategy else 0

    def is_outdated(self, href, stored_version):
        strategy = self.match(href)
        return strategy is not None and strategy.version > stored_version

    def rewrite_url(self, href):
        strategy = self.match(href)
        if strategy is None or strategy.rewrite_url is None:
            return href
        return strategy.rewrite_url(href)

    def inject_headers(self, headers, href):
        strategy = self.match(href)
        if strategy is not None and strategy.inject_headers is not None:
            strategy.inject_headers(headers, href)
        return headers

    def extract(self, raw_body, href):
        """
        Run the matching strategy's extractor.

        Parameters:
            raw_body (str): Decoded response body
            href (str): Bookmark URL (before rewriting)

        Returns:
            tuple: (text, matched). matched is False when the generic conversion must be used.
        """
        strategy = self.match(href)
        if strategy is None or strategy.extract is None:
            return "", False
        text = strategy.extract(raw_body, href)
        if text is None:
            return "", False
        return standardize_spaces(text), True


# Get path to custom parsers directory handling frozen environments
def get_custom_parsers_dir():
    """
    Get the directory containing custom parsers, handling both normal and frozen environments.

    In a frozen (PyInstaller) environment, resources are extracted to a temporary
    directory pointed to by sys._MEIPASS. In a normal Python environment,
    they are relative to this module's location.
    """
    if getattr(sys, 'frozen', False):
        base_dir = sys._MEIPASS
    else:
        base_dir = os.path.dirname(os.path.abspath(__file__))

    return os.path.join(base_dir, 'custom_parsers')


def strategy_from_module(name, module):
    """Build a SiteStrategy from a parser module's PATTERN, VERSION and hook functions."""
    pattern = getattr(module, 'PATTERN', None)
    if not pattern:
        return None
    return SiteStrategy(
        name=name,
        pattern=re.compile(pattern),
        version=int(getattr(module, 'VERSION', 0)),
        rewrite_url=getattr(module, 'rewrite_url', None),
        inject_headers=getattr(module, 'inject_headers', None),
        extract=getattr(module, 'extract', None),
    )


# Load custom parsers from custom_parsers/ directory
def load_custom_parsers(parser_filter=None, parsers_dir=None):
    """
    Discover the site strategies in the custom_parsers/ directory.

    Each parser is a Python module defining PATTERN (a regular expression matched
    against the bookmark URL) and optionally VERSION, rewrite_url, inject_headers
    and extract.

    Parameters:
        parser_filter (list): Optional list of parser names (without .py extension) to load.
                             If None, all parsers are loaded.
        parsers_dir (str): Directory to scan, defaults to get_custom_parsers_dir()

    Returns:
        StrategyRegistry: Strategies sorted alphabetically by filename.
    """
    strategies = []
    parsers_dir = parsers_dir or get_custom_parsers_dir()

    if not os.path.exists(parsers_dir):
        logger.warning(f"custom_parsers/ directory not found at {parsers_dir}, skipping custom parsers")
        return StrategyRegistry()

    for filename in sorted(os.listdir(parsers_dir)):
        if not filename.endswith('.py') or filename.startswith('__'):
            continue
        module_name = filename[:-3]

        if parser_filter is not None and module_name not in parser_filter:
            logger.info(f"Skipping custom parser (not in filter): {module_name}")
            continue

        module_path = os.path.join(parsers_dir, filename)
        try:
            spec = importlib.util.spec_from_file_location(f"custom_parsers.{module_name}", module_path)
            if spec is None or spec.loader is None:
                logger.warning(f"Could not load module {module_name}")
                continue
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
        except Exception as e:
            logger.error(f"Error loading custom parser {module_name}: {e}")
            continue

        strategy = strategy_from_module(module_name, module)
        if strategy is None:
            logger.warning(f"{module_name} does not define a PATTERN, skipping")
            continue
        strategies.append(strategy)
        logger.info(f"Loaded custom parser: {module_name} (version {strategy.version})")

    if parser_filter:
        found = {strategy.name for strategy in strategies}
        for name in parser_filter:
            if name not in found:
                logger.warning(f"Custom parser '{name}' specified in filter but not found.")

    logger.info(f"Loaded {len(strategies)} custom parsers")
    return StrategyRegistry(strategies)
