#!/usr/bin/env python3
"""
Configuration management for the feed synchronization engine.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)

    log_format = '%(name)s - %(levelname)s - %(message)s'
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        log_format = '%(asctime)s - ' + log_format

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # aiohttp access/client logs are noisy at INFO
    getLogger("aiohttp").setLevel(WARNING)

    return getLogger("FeedSync")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Creates a logger named "FeedSync.{name}". All loggers created this way
    inherit the global logging configuration set by _setup_global_logger().

    Args:
        name: The logger name (e.g., "fetcher", "reconciler", "scheduler")

    Returns:
        A logger instance with the unified configuration
    """
    return getLogger(f"FeedSync.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the feed synchronization engine.

    Values are loaded from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml configuration file (relay endpoint and seed subscriptions)

    Secrets file variables override both system and .env variables.

    Example feeds.yaml format:
    ```yaml
    proxy:
      url: "https://reader.example.com"
    feeds:
      lwn:
        url: "https://lwn.net/headlines/rss"
        folder: "Linux"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _env_number(self, env_var: str, default, min_val, cast):
        """Read a numeric environment variable, falling back to default when invalid or below min_val."""
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw)
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value {raw!r}, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
            return default
        return value

    def _env_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        return self._env_number(env_var, default, min_val, int)

    def _env_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        return self._env_number(env_var, default, min_val, float)

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.FEED_PROXY_BASE = environ.get("FEED_PROXY_BASE", "").strip() or None

        # Fleet refresh configuration
        self.REFRESH_ALL_MIN_INTERVAL = self._env_float("REFRESH_ALL_MIN_INTERVAL", 180.0, 0.0)
        self.FLEET_CONCURRENCY = self._env_int("FLEET_CONCURRENCY", 3, 1)
        self.FETCH_INTERVAL_MINUTES = self._env_int("FETCH_INTERVAL_MINUTES", 30, 1)

        # HTTP request configuration (seconds)
        self.MAX_FETCH_RETRIES = self._env_int("MAX_FETCH_RETRIES", 2, 0)
        self.RETRY_BACKOFF_BASE = self._env_float("RETRY_BACKOFF_BASE", 0.5, 0.0)
        self.FETCH_TIMEOUT = self._env_float("FETCH_TIMEOUT", 10.0, 1.0)

        # Per-feed failure backoff (seconds)
        self.FEED_BACKOFF_BASE = self._env_float("FEED_BACKOFF_BASE", 30.0, 0.0)
        self.MAX_BACKOFF = self._env_float("MAX_BACKOFF", 900.0, 0.0)

        # Article handling
        self.UNREAD_LIMIT = self._env_int("UNREAD_LIMIT", 50, 0)
        self.SNIPPET_LENGTH = self._env_int("SNIPPET_LENGTH", 150, 1)
        self.MIN_WORD_LENGTH = self._env_int("MIN_WORD_LENGTH", 2, 1)

        # Relay cache lifetime advertised for non-refresh responses
        self.CACHE_MAX_AGE = self._env_int("CACHE_MAX_AGE", 3600, 0)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._env_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the specified YAML mapping and exports each
        key as an environment variable. Both a top-level mapping and a mapping
        nested under `environment` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_feed_sources(self) -> None:
        """Populate FEED_SOURCES and the relay base from feeds.yaml.

        Any failure results in an empty mapping; the environment relay base
        (FEED_PROXY_BASE) always wins over the file.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        self.FEED_SOURCES: Dict[str, Dict[str, Optional[str]]] = {}
        if not isinstance(config_data, dict):
            return

        proxy_section = config_data.get('proxy')
        if isinstance(proxy_section, dict):
            proxy_url_value = proxy_section.get('url')
            if isinstance(proxy_url_value, str) and proxy_url_value.strip():
                if not self.FEED_PROXY_BASE:
                    self.FEED_PROXY_BASE = proxy_url_value.strip()
                    logger.info("Configured feed relay via feeds.yaml")
            elif proxy_url_value is not None:
                logger.warning(f"Invalid proxy.url entry in {feeds_path}; ignoring relay configuration")
        elif proxy_section not in (None, False):
            logger.warning(f"Proxy configuration in {feeds_path} must be a mapping with a url field")

        feeds_section = config_data.get('feeds')
        if feeds_section is None:
            return
        if not isinstance(feeds_section, dict):
            logger.warning(f"Feeds section in {feeds_path} must be a mapping")
            return

        for feed_slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, dict) and isinstance(feed_cfg.get('url'), str):
                self.FEED_SOURCES[feed_slug] = {
                    'url': feed_cfg['url'].strip(),
                    'folder': feed_cfg.get('folder'),
                }
                logger.debug(f"Loaded feed {feed_slug}: {feed_cfg['url']}")
            else:
                logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")

        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "relay_configured": bool(self.FEED_PROXY_BASE),
            "refresh_all_min_interval": self.REFRESH_ALL_MIN_INTERVAL,
            "fleet_concurrency": self.FLEET_CONCURRENCY,
            "max_fetch_retries": self.MAX_FETCH_RETRIES,
            "retry_backoff_base": self.RETRY_BACKOFF_BASE,
            "feed_backoff_base": self.FEED_BACKOFF_BASE,
            "max_backoff": self.MAX_BACKOFF,
            "fetch_timeout": self.FETCH_TIMEOUT,
            "unread_limit": self.UNREAD_LIMIT,
            "snippet_length": self.SNIPPET_LENGTH,
            "cache_max_age": self.CACHE_MAX_AGE,
            "feed_count": len(self.FEED_SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
