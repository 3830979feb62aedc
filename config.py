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
import logging
import tomllib

import bookmark_store

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "default_config.toml"
DEFAULT_LOG_FILE = "crawl_errors.log"
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


# Load TOML configuration
def load_config(config_path=DEFAULT_CONFIG_PATH):
    """
    Load configuration from TOML file.

    Parameters:
        config_path (str): Path to the TOML configuration file.

    Returns:
        dict: Configuration dictionary loaded from TOML file, empty if it cannot be read.
    """
    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        logger.warning(f"Configuration file '{config_path}' not found. Using default values.")
        return {}
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Error loading configuration from '{config_path}': {e}. Using default values.")
        return {}


def resolve_db_path(config_data=None, cli_path=None):
    """Database path: command line, then BOOKMARKS_DB, then the [store] section, then the default."""
    if cli_path:
        return cli_path
    if os.environ.get('BOOKMARKS_DB'):
        return os.environ['BOOKMARKS_DB']
    store_config = (config_data or {}).get("store", {})
    return os.path.expanduser(store_config.get("path", bookmark_store.bookmark_store_path))


# Setup logging for comprehensive error handling
def setup_logging(config_data=None, log_file=None, level=None):
    """
    Configure the root logger once for a command-line run.

    Parameters:
        config_data (dict): Parsed configuration, its [logging] section is used
        log_file (str): Overrides the log file; an empty string disables file logging
        level (str): Overrides the log level name
    """
    logging_config = (config_data or {}).get("logging", {})
    level = level or logging_config.get("level", "INFO")
    if log_file is None:
        log_file = logging_config.get("file", DEFAULT_LOG_FILE)

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT, handlers=handlers)


# Configuration settings
class FetchConfig:
    """Settings of one fetch run: defaults, overridden by the [fetch] TOML section, then by keyword arguments."""

    DEFAULT_THREADS = 6
    DEFAULT_RETRIES = 2
    DEFAULT_TIMEOUT = 10
    DEFAULT_RETRY_INTERVAL = 3.0
    DEFAULT_RETRY_SLOTS = 1

    def __init__(self, config_data=None, **overrides):
        """
        Initialize FetchConfig with TOML configuration data.

        Parameters:
            config_data (dict, optional): Configuration dictionary from TOML file.
                                         If None, uses default values.
            overrides: Values taking precedence over the file (None values are ignored),
                       typically the command-line arguments.
        """
        if config_data is None:
            config_data = {}

        fetch_config = dict(config_data.get("fetch", {}))
        fetch_config.update({key: value for key, value in overrides.items() if value is not None})

        # Number of foreground slots, i.e. concurrent first attempts
        self.threads = max(1, int(fetch_config.get("threads", self.DEFAULT_THREADS)))
        # Total number of attempts per bookmark
        self.retries = max(1, int(fetch_config.get("retries", self.DEFAULT_RETRIES)))
        self.timeout = float(fetch_config.get("timeout", self.DEFAULT_TIMEOUT))
        self.retry_interval = float(fetch_config.get("retry_interval", self.DEFAULT_RETRY_INTERVAL))
        # Extra slots taken by workers that released their foreground slot to retry
        self.retry_slots = max(1, int(fetch_config.get("retry_slots", self.DEFAULT_RETRY_SLOTS)))
        self.overwrite = bool(fetch_config.get("overwrite", False))
        self.outdated_only = bool(fetch_config.get("outdated_only", False))
        self.uncached_only = bool(fetch_config.get("uncached_only", False))

        parsers = fetch_config.get("parsers")
        if isinstance(parsers, str):
            parsers = [p.strip() for p in parsers.split('|') if p.strip()]
        self.parsers = list(parsers) if parsers else None

    @property
    def early_release(self):
        # Uncached-only runs keep their slot through retries
        return not self.uncached_only

    def __repr__(self):
        return (f"FetchConfig(threads={self.threads}, retries={self.retries}, timeout={self.timeout}, "
                f"retry_interval={self.retry_interval}, retry_slots={self.retry_slots}, overwrite={self.overwrite}, "
                f"outdated_only={self.outdated_only}, uncached_only={self.uncached_only}, parsers={self.parsers})")
