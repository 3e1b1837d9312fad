#!/usr/bin/env python3
"""
Configuration management for the Channel Summarizer.

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

YOUTUBE_FEED_URL_TEMPLATE = "https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}"
YOUTUBE_WATCH_URL_TEMPLATE = "https://www.youtube.com/watch?v={item_id}"
EXPO_PUSH_API_URL = "https://exp.host/--/api/v2/push/send"


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
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
        force=True
    )

    # Keep the HTTP client quiet unless debugging
    getLogger("aiohttp").setLevel(WARNING if level > DEBUG else DEBUG)

    return getLogger("ChannelSummarizer")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "monitor", "push")

    Returns:
        A logger named "ChannelSummarizer.{name}"
    """
    return getLogger(f"ChannelSummarizer.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for the Channel Summarizer.

    Values are loaded from, in increasing order of precedence:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Example secrets.yaml format:
    ```yaml
    OPENAI_API_KEY: "your-api-key"
    EXPO_ACCESS_TOKEN: "your-expo-token"
    SLACK_BOT_TOKEN: "xoxb-..."
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

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

    def _validate_bool(self, env_var: str, default: bool) -> bool:
        raw = environ.get(env_var)
        if raw is None:
            return default
        value = raw.strip().lower()
        if value in ("1", "true", "yes", "on"):
            return True
        if value in ("0", "false", "no", "off"):
            return False
        logger.warning(f"Invalid {env_var} value '{raw}', using default {default}")
        return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "channels.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; ChannelSummarizer/1.0)")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.CHANNELS_CONFIG_PATH = environ.get("CHANNELS_CONFIG_PATH", path.join(base_dir, "channels.yaml"))
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # Timers
        self.POLL_INTERVAL_MINUTES = self._validate_positive_int("POLL_INTERVAL_MINUTES", 5, 1)
        self.RETRY_SCAN_INTERVAL_SECONDS = self._validate_positive_int("RETRY_SCAN_INTERVAL_SECONDS", 30, 1)
        self.RETRY_HOUSEKEEPING_INTERVAL_MINUTES = self._validate_positive_int("RETRY_HOUSEKEEPING_INTERVAL_MINUTES", 60, 1)
        self.RETRY_ENTRY_MAX_AGE_HOURS = self._validate_positive_int("RETRY_ENTRY_MAX_AGE_HOURS", 24, 1)

        # Item processing
        self.SUMMARY_TIMEOUT_SECONDS = self._validate_positive_float("SUMMARY_TIMEOUT_SECONDS", 120.0, 1.0)
        self.PROCESSING_CONCURRENCY = self._validate_positive_int("PROCESSING_CONCURRENCY", 3, 1)
        self.MAX_PROCESSING_RETRIES = self._validate_positive_int("MAX_PROCESSING_RETRIES", 3, 1)
        # Whether a "no captions" failure burns retry budget like any other failure
        self.NO_CAPTIONS_CONSUMES_RETRY = self._validate_bool("NO_CAPTIONS_CONSUMES_RETRY", True)
        self.BACKFILL_ITEMS = self._validate_positive_int("BACKFILL_ITEMS", 3, 0)

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.1)

        # Feed source
        self.FEED_URL_TEMPLATE = environ.get("FEED_URL_TEMPLATE", YOUTUBE_FEED_URL_TEMPLATE)
        self.ITEM_URL_TEMPLATE = environ.get("ITEM_URL_TEMPLATE", YOUTUBE_WATCH_URL_TEMPLATE)
        self.SHORT_FORM_PATTERN = environ.get("SHORT_FORM_PATTERN", "/shorts/")

        # Classification oracle and extraction
        self.YOUTUBE_API_KEY = environ.get("YOUTUBE_API_KEY")
        self.SUPADATA_API_KEY = environ.get("SUPADATA_API_KEY")

        # Summarization LLM (Azure when AZURE_ENDPOINT is set, plain OpenAI otherwise)
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.OPENAI_MODEL = environ.get("OPENAI_MODEL", "gpt-4o-mini")
        self.AZURE_ENDPOINT = environ.get("AZURE_ENDPOINT")
        if self.AZURE_ENDPOINT:
            normalized = self.AZURE_ENDPOINT.strip()
            if normalized.lower().startswith("https://"):
                normalized = normalized[8:]
            elif normalized.lower().startswith("http://"):
                normalized = normalized[7:]
            self.AZURE_ENDPOINT = normalized.strip("/")
        self.OPENAI_API_VERSION = environ.get("OPENAI_API_VERSION")
        self.DEPLOYMENT_NAME = environ.get("DEPLOYMENT_NAME")
        self.SUMMARIZER_MAX_RETRIES = self._validate_positive_int("SUMMARIZER_MAX_RETRIES", 2, 0)
        self.SUMMARIZER_RETRY_DELAY_BASE = self._validate_positive_float("SUMMARIZER_RETRY_DELAY_BASE", 1.0, 0.1)
        self.SUMMARY_LANGUAGE = environ.get("SUMMARY_LANGUAGE", "English")

        # Delivery
        self.EXPO_ACCESS_TOKEN = environ.get("EXPO_ACCESS_TOKEN")
        self.PUSH_API_URL = environ.get("PUSH_API_URL", EXPO_PUSH_API_URL)
        self.PUSH_BATCH_SIZE = self._validate_positive_int("PUSH_BATCH_SIZE", 100, 1)
        self.SLACK_BOT_TOKEN = environ.get("SLACK_BOT_TOKEN")
        self.SLACK_API_URL = environ.get("SLACK_API_URL", "https://slack.com/api/chat.postMessage")

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the YAML mapping (top-level, or nested under
        `environment`) and exports each key as an environment variable.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
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
            kind: Short label for logging context (e.g. 'secrets', 'channels')

        Returns:
            Parsed YAML or None on failure.
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
            with open(file_path, 'r', encoding='utf-8') as f:
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

    def load_channel_seeds(self, file_path: str | None = None) -> List[Dict[str, Any]]:
        """Read channel seeds from channels.yaml.

        Expected format:
        ```yaml
        channels:
          UCxxxxxxxxxxxxxxxxxxxxxx:
            title: Some Channel
            subscribers: [1, 2]
        ```

        Returns a list of {channel_id, title, subscribers} dicts; invalid entries are skipped.
        """
        seeds_path = file_path or self.CHANNELS_CONFIG_PATH
        data = self._safe_read_yaml(seeds_path, 5 * 1024 * 1024, 'channels')
        if not isinstance(data, dict) or not isinstance(data.get('channels'), dict):
            return []

        seeds: List[Dict[str, Any]] = []
        for channel_id, channel_cfg in data['channels'].items():
            channel_cfg = channel_cfg or {}
            if not isinstance(channel_cfg, dict):
                logger.warning(f"Skipping invalid channel configuration for '{channel_id}': {channel_cfg}")
                continue
            subscribers = channel_cfg.get('subscribers') or []
            try:
                subscribers = [int(s) for s in subscribers]
            except (TypeError, ValueError):
                logger.warning(f"Invalid subscribers list for '{channel_id}'; ignoring subscribers")
                subscribers = []
            seeds.append({
                'channel_id': str(channel_id),
                'title': str(channel_cfg.get('title') or channel_id),
                'subscribers': subscribers,
            })
        logger.info(f"Loaded {len(seeds)} channel seeds from {seeds_path}")
        return seeds

    def feed_url(self, channel_id: str) -> str:
        return self.FEED_URL_TEMPLATE.format(channel_id=channel_id)

    def item_url(self, item_id: str) -> str:
        return self.ITEM_URL_TEMPLATE.format(item_id=item_id)

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "poll_interval_minutes": self.POLL_INTERVAL_MINUTES,
            "retry_scan_interval_seconds": self.RETRY_SCAN_INTERVAL_SECONDS,
            "summary_timeout_seconds": self.SUMMARY_TIMEOUT_SECONDS,
            "processing_concurrency": self.PROCESSING_CONCURRENCY,
            "max_processing_retries": self.MAX_PROCESSING_RETRIES,
            "no_captions_consumes_retry": self.NO_CAPTIONS_CONSUMES_RETRY,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_youtube_api_key": bool(self.YOUTUBE_API_KEY),
            "has_supadata_key": bool(self.SUPADATA_API_KEY),
            "has_openai_key": bool(self.OPENAI_API_KEY),
            "has_expo_token": bool(self.EXPO_ACCESS_TOKEN),
            "slack_enabled": bool(self.SLACK_BOT_TOKEN),
        }


# Global configuration instance
config = Config()
