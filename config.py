#!/usr/bin/env python3
"""
Configuration for the content library pipeline.

Reads environment variables, an optional .env file and an optional YAML
secrets file, validates them and exposes the results on ``config``.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}


def _setup_global_logger():
    """Configure stdout logging from LOG_LEVEL and LOG_TIMESTAMPS."""
    level = _LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)
    log_format = '%(name)s - %(levelname)s - %(message)s'
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        log_format = '%(asctime)s - ' + log_format

    basicConfig(level=level, format=log_format, handlers=[StreamHandler(sys.stdout)], force=True)

    # Keep third-party HTTP/parsing chatter out of INFO output
    for name in ("aiohttp", "readability", "readability.readability", "chardet"):
        getLogger(name).setLevel(max(level, WARNING))

    return getLogger("ContentLibrary")


def get_logger(name: str):
    """Logger named ``ContentLibrary.<name>`` under the shared configuration."""
    return getLogger(f"ContentLibrary.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for the acquisition pipeline.

    Values are loaded from, in increasing order of precedence:
    1. System environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Subscriptions are declared separately in subscriptions.yaml and are only
    used to seed the subscription store (see ``load_subscription_definitions``).
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
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

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "library.db")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.SUBSCRIPTIONS_CONFIG_PATH = environ.get(
            "SUBSCRIPTIONS_CONFIG_PATH", path.join(base_dir, "subscriptions.yaml")
        )

        # HTTP identity; many sites degrade or block non-browser agents
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.ACCEPT_LANGUAGE = environ.get("ACCEPT_LANGUAGE", "zh-CN,zh;q=0.9,en;q=0.8")

        # HTTP request configuration
        self.PAGE_FETCH_TIMEOUT = self._validate_positive_int("PAGE_FETCH_TIMEOUT", 30, 1)
        self.FEED_FETCH_TIMEOUT = self._validate_positive_int("FEED_FETCH_TIMEOUT", 15, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Backpressure
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 5, 1)
        self.SUBSCRIPTION_CONCURRENCY = self._validate_positive_int("SUBSCRIPTION_CONCURRENCY", 3, 1)
        # 0 disables page rate limiting
        self.PAGE_REQUESTS_PER_MINUTE = self._validate_positive_int("PAGE_REQUESTS_PER_MINUTE", 30, 0)

        # Extraction and ingestion thresholds
        self.MIN_CONTENT_LENGTH = self._validate_positive_int("MIN_CONTENT_LENGTH", 100, 1)
        self.BACKFILL_MIN_LENGTH = self._validate_positive_int("BACKFILL_MIN_LENGTH", 500, 0)
        self.FEED_ITEM_LIMIT = self._validate_positive_int("FEED_ITEM_LIMIT", 10, 1)
        self.SUMMARY_PREFIX_LENGTH = self._validate_positive_int("SUMMARY_PREFIX_LENGTH", 200, 1)
        self.FALLBACK_TEXT_LIMIT = self._validate_positive_int("FALLBACK_TEXT_LIMIT", 5000, 100)

        # Scheduler configuration
        self.SCHEDULER_INTERVAL_MINUTES = self._validate_positive_int("SCHEDULER_INTERVAL_MINUTES", 15, 1)
        self.SCHEDULER_RUN_IMMEDIATELY = environ.get("SCHEDULER_RUN_IMMEDIATELY", "true").lower() == "true"

    def _load_secrets_file(self):
        """Export the YAML mapping named by SECRETS_FILE into the environment.

        Entries may sit at the top level or under an ``environment`` key.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets, dict):
            if secrets is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        nested = secrets.get('environment')
        loaded = 0
        for key, value in (nested if isinstance(nested, dict) else secrets).items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
                continue
            environ[key] = str(value)
            loaded += 1
        logger.info(f"Loaded {loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Parsed YAML from ``file_path``, or None if missing, oversized, empty or malformed."""
        label = kind.capitalize()
        if not path.isfile(file_path):
            logger.warning(f"{label} file not found at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"No read permission for {kind} file at {file_path}")
            return None
        try:
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{label} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
            return None
        return data

    def load_subscription_definitions(self, file_path: str | None = None) -> List[Dict[str, Any]]:
        """Read subscription declarations from subscriptions.yaml.

        Expected format::

            subscriptions:
              tesla-news:
                name: Tesla News
                company: Tesla
                frequency: daily
                keywords: [battery, FSD]
                category_id: cars
                sources:
                  - url: https://example.com/tesla.xml

        Returns a list of plain dicts (one per subscription, ``id`` set to the
        mapping key); invalid entries are skipped with a warning.
        """
        config_path = file_path or self.SUBSCRIPTIONS_CONFIG_PATH
        data = self._safe_read_yaml(config_path, 5 * 1024 * 1024, 'subscriptions')
        section = data.get('subscriptions') if isinstance(data, dict) else None
        if not isinstance(section, dict):
            if data is not None:
                logger.warning(f"No valid subscriptions found in {config_path}")
            return []

        definitions: List[Dict[str, Any]] = []
        for sub_id, sub_cfg in section.items():
            if not isinstance(sub_cfg, dict) or not isinstance(sub_cfg.get('sources'), list):
                logger.warning(f"Skipping invalid subscription configuration for '{sub_id}'")
                continue
            definition = dict(sub_cfg)
            definition['id'] = str(sub_id)
            definitions.append(definition)
        logger.info(f"Loaded {len(definitions)} subscription definitions from {config_path}")
        return definitions

    def get_config_summary(self) -> Dict[str, Any]:
        """Non-secret settings, for the startup debug log."""
        return {
            "database_path": self.DATABASE_PATH,
            "page_fetch_timeout": self.PAGE_FETCH_TIMEOUT,
            "feed_fetch_timeout": self.FEED_FETCH_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "subscription_concurrency": self.SUBSCRIPTION_CONCURRENCY,
            "backfill_min_length": self.BACKFILL_MIN_LENGTH,
            "feed_item_limit": self.FEED_ITEM_LIMIT,
            "min_content_length": self.MIN_CONTENT_LENGTH,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
