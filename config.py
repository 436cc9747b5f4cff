#!/usr/bin/env python3
"""
Configuration management for the RSS aggregator.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    environ.setdefault("PYTHONUNBUFFERED", "1")

    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # Test runners may swap stdout for objects without reconfigure()
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(line_buffering=True)

    # aiohttp access/client chatter stays at WARNING unless explicitly overridden
    aiohttp_level = level_map.get(environ.get("AIOHTTP_LOG_LEVEL", "WARNING").upper(), WARNING)
    getLogger("aiohttp").setLevel(aiohttp_level)

    return getLogger("RSSAggregator")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "scheduler", "models")

    Returns:
        A logger instance named "RSSAggregator.{name}"
    """
    return getLogger(f"RSSAggregator.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the RSS aggregator.

    Configuration is loaded from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml (feeds registered at startup)

    .env variables override system environment variables, and the secrets
    file overrides both.
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

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _flag(self, env_var: str, default: bool) -> bool:
        return environ.get(env_var, "true" if default else "false").lower() == "true"

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; RSSAggregator/1.0)")

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Staleness cache: a feed is not refetched more often than this
        self.CACHE_INTERVAL_MINUTES = self._validate_positive_int("CACHE_INTERVAL_MINUTES", 30, 0)

        # Scheduler configuration
        self.TICK_INTERVAL_SECONDS = self._validate_positive_float("TICK_INTERVAL_SECONDS", 60.0, 0.01)
        self.FETCH_BATCH_SIZE = self._validate_positive_int("FETCH_BATCH_SIZE", 10, 1)
        self.SCHEDULER_RUN_IMMEDIATELY = self._flag("SCHEDULER_RUN_IMMEDIATELY", False)

        # Post content handling
        self.SANITIZE_DESCRIPTIONS = self._flag("SANITIZE_DESCRIPTIONS", True)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, the file is read and each top-level key (or each
        key under an ``environment`` mapping) is exported as an environment
        variable before the rest of the configuration is parsed.
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
        """Populate self.FEED_SOURCES from feeds.yaml.

        Each entry becomes a dict with ``slug``, ``url``, ``name`` and ``user``.
        Any failure results in an empty list.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        self.FEED_SOURCES: List[Dict[str, str]] = []
        if not config_data:
            return

        feeds_section = config_data.get('feeds') if isinstance(config_data, dict) else None
        if not isinstance(feeds_section, dict):
            logger.warning(f"No valid feeds found in {feeds_path}")
            return

        for feed_slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, dict) and isinstance(feed_cfg.get('url'), str) and feed_cfg['url'].strip():
                self.FEED_SOURCES.append({
                    'slug': str(feed_slug),
                    'url': feed_cfg['url'].strip(),
                    'name': str(feed_cfg.get('name') or feed_slug),
                    'user': str(feed_cfg.get('user') or 'default'),
                })
                logger.debug(f"Loaded feed {feed_slug}: {feed_cfg['url']}")
            else:
                logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")

        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "cache_interval_minutes": self.CACHE_INTERVAL_MINUTES,
            "tick_interval_seconds": self.TICK_INTERVAL_SECONDS,
            "fetch_batch_size": self.FETCH_BATCH_SIZE,
            "run_immediately": self.SCHEDULER_RUN_IMMEDIATELY,
            "sanitize_descriptions": self.SANITIZE_DESCRIPTIONS,
            "feed_count": len(self.FEED_SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
