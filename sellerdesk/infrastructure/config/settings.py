"""Loads configuration settings for the API access layer.

Supports loading from environment variables, .env files and a dedicated
YAML configuration file (e.g., ~/.sellerdesk/config.yaml). Each Settings
instance is independent; nothing is cached at module level.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from dotenv import dotenv_values

from sellerdesk.domain.exceptions import ConfigurationError
from sellerdesk.domain.models.config import (
    DEFAULT_AUTHORIZATION_URL,
    DEFAULT_BASE_URL,
    DEFAULT_REDIRECT_URI,
    DEFAULT_SCOPES,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_TOKEN_URL,
    DEFAULT_USER_AGENT,
    ApiClientConfig,
    CacheConfig,
    OAuthConfig,
    QueueConfig,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
DEFAULT_CONFIG_DIR = Path.home() / ".sellerdesk"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_TOKEN_FILE = DEFAULT_CONFIG_DIR / "tokens.enc"
ENV_FILE_NAME = ".env"
ENV_PREFIX = "SELLERDESK_"
DEFAULT_OWNER_ID = "default"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def env_var_name(key: str) -> str:
    """Maps a dotted key ('api.base_url') to its variable name ('SELLERDESK_API_BASE_URL')."""
    return f"{ENV_PREFIX}{key.upper().replace('.', '_')}"


def _coerce(value: str) -> Any:
    """Converts common string forms to bool/int/float; leaves the rest alone."""
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    try:
        if "." in value:
            return float(value)
        return int(value)
    except (ValueError, TypeError):
        return value


def _flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flattens nested YAML sections into dotted keys. Dict leaves stay whole under their own key too."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat[dotted] = dict(value)
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def find_dotenv_path(start: Optional[Path] = None) -> Optional[Path]:
    """Searches for the .env file upwards from ``start`` (the current directory by default)."""
    cwd = start or Path.cwd()
    for path in [cwd] + list(cwd.parents):
        env_path = path / ENV_FILE_NAME
        if env_path.is_file():
            return env_path
    return None


class Settings:
    """Layered configuration.

    Priority order (highest to lowest):
    1. Environment variables (``SELLERDESK_*``)
    2. .env file
    3. YAML configuration file
    4. Default values
    """

    def __init__(
        self,
        config_file: Optional[Path] = DEFAULT_CONFIG_FILE,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        search_dotenv: bool = True,
    ):
        """Loads settings.

        Args:
            config_file: YAML configuration file; skipped if None or absent.
            env_file: .env file; searched upwards from cwd if None and
                ``search_dotenv`` is set.
            environ: Environment mapping (defaults to os.environ).
            search_dotenv: Whether to look for a .env file when none is given.
        """
        self._environ: Mapping[str, str] = environ if environ is not None else os.environ
        self._yaml: Dict[str, Any] = {}
        self._dotenv: Dict[str, str] = {}

        # 1. Load from YAML file (Lowest priority)
        if config_file is not None and Path(config_file).is_file():
            self._yaml = self._load_yaml(Path(config_file))
        elif config_file is not None:
            logger.debug(f"YAML config file not found: {config_file}")

        # 2. Load from .env file (Medium priority)
        dotenv_path = env_file or (find_dotenv_path() if search_dotenv else None)
        if dotenv_path and Path(dotenv_path).is_file():
            values = dotenv_values(dotenv_path)
            self._dotenv = {k: v for k, v in values.items() if v is not None}
            logger.info(f"Loaded environment values from: {dotenv_path}")

        # 3. Environment variables (Highest priority) are read on access
        logger.debug("Configuration loading process completed.")

    @staticmethod
    def _load_yaml(config_file: Path) -> Dict[str, Any]:
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load or parse YAML config {config_file}: {e}") from e
        if yaml_config is None:
            return {}
        if not isinstance(yaml_config, dict):
            raise ConfigurationError(f"YAML config file {config_file} did not contain a mapping.")
        logger.info(f"Loaded configuration from YAML: {config_file}")
        return _flatten(yaml_config)

    # --- Lookup ---

    def get(self, key: str, default: Any = None, raw: bool = False) -> Any:
        """Returns the value for a dotted key, honouring the priority order.

        Environment and .env values are strings; unless ``raw`` is set they
        are converted to bool/int/float where they look like one.
        """
        convert = (lambda v: v) if raw else _coerce
        name = env_var_name(key)
        if name in self._environ:
            return convert(self._environ[name])
        if name in self._dotenv:
            return convert(self._dotenv[name])
        if key in self._yaml:
            return self._yaml[key]
        return default

    def _get_str(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.get(key, default, raw=True)
        if value is None:
            return None
        return str(value)

    def _get_int(self, key: str, default: int) -> int:
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Setting '{key}' must be an integer, got {value!r}.") from e

    def _get_float(self, key: str, default: float) -> float:
        value = self.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Setting '{key}' must be a number, got {value!r}.") from e

    def _get_bool(self, key: str, default: bool) -> bool:
        value = self.get(key, default)
        if isinstance(value, str):
            if value.lower() in ("1", "yes", "on"):
                return True
            if value.lower() in ("0", "no", "off"):
                return False
            raise ConfigurationError(f"Setting '{key}' must be true or false, got {value!r}.")
        return bool(value)

    # --- Typed sections ---

    @property
    def api_key(self) -> str:
        key = self._get_str("api.key")
        if not key:
            raise ConfigurationError(f"Missing API key. Set {env_var_name('api.key')} or api.key in the config file.")
        return key

    def cache_config(self) -> CacheConfig:
        ttl_by_endpoint = self.get("cache.ttl_by_endpoint") or {}
        if not isinstance(ttl_by_endpoint, Mapping):
            raise ConfigurationError("Setting 'cache.ttl_by_endpoint' must be a mapping of pattern to seconds.")
        return CacheConfig(
            enabled=self._get_bool("cache.enabled", True),
            default_ttl=self._get_int("cache.default_ttl", 300),
            ttl_by_endpoint={str(k): int(v) for k, v in ttl_by_endpoint.items()},
            max_entries=self._get_int("cache.max_entries", 1000),
        )

    def retry_policy(self) -> RetryPolicy:
        defaults = RetryPolicy()
        return RetryPolicy(
            max_attempts=self._get_int("retry.max_attempts", defaults.max_attempts),
            initial_delay=self._get_float("retry.initial_delay", defaults.initial_delay),
            max_delay=self._get_float("retry.max_delay", defaults.max_delay),
            multiplier=self._get_float("retry.multiplier", defaults.multiplier),
        )

    def queue_config(self) -> QueueConfig:
        defaults = QueueConfig()
        return QueueConfig(
            concurrency=self._get_int("queue.concurrency", defaults.concurrency),
            window=self._get_float("queue.window", defaults.window),
            max_per_window=self._get_int("queue.max_per_window", defaults.max_per_window),
        )

    def api_client_config(self) -> ApiClientConfig:
        """Builds the API client configuration.

        Raises:
            ConfigurationError: If the API key is missing or a value is malformed.
        """
        return ApiClientConfig(
            api_key=self.api_key,
            base_url=self._get_str("api.base_url", DEFAULT_BASE_URL),
            user_agent=self._get_str("api.user_agent", DEFAULT_USER_AGENT),
            timeout=self._get_float("api.timeout", DEFAULT_TIMEOUT_SECONDS),
            cache=self.cache_config(),
            retry=self.retry_policy(),
            queue=self.queue_config(),
        )

    def oauth_config(self) -> OAuthConfig:
        """Builds the OAuth configuration.

        Raises:
            ConfigurationError: If no client id is configured.
        """
        client_id = self._get_str("oauth.client_id")
        if not client_id:
            raise ConfigurationError(
                f"Missing OAuth client id. Set {env_var_name('oauth.client_id')} or oauth.client_id in the config file."
            )
        return OAuthConfig(
            client_id=client_id,
            client_secret=self._get_str("oauth.client_secret"),
            redirect_uri=self._get_str("oauth.redirect_uri", DEFAULT_REDIRECT_URI),
            scopes=self._scopes(),
            authorization_url=self._get_str("oauth.authorization_url", DEFAULT_AUTHORIZATION_URL),
            token_url=self._get_str("oauth.token_url", DEFAULT_TOKEN_URL),
        )

    def _scopes(self) -> Tuple[str, ...]:
        value = self.get("oauth.scopes")
        if value is None:
            return DEFAULT_SCOPES
        if isinstance(value, str):
            return tuple(part for part in value.replace(",", " ").split() if part)
        return tuple(str(part) for part in value)

    @property
    def cache_backend(self) -> str:
        backend = (self._get_str("cache.backend", "memory") or "memory").lower()
        if backend not in ("memory", "redis"):
            raise ConfigurationError(f"Unknown cache backend '{backend}'. Use 'memory' or 'redis'.")
        return backend

    @property
    def redis_url(self) -> Optional[str]:
        return self._get_str("redis.url")

    @property
    def redis_key_prefix(self) -> str:
        return self._get_str("redis.key_prefix", "sellerdesk:cache:")

    @property
    def token_file(self) -> Path:
        return Path(self._get_str("tokens.file", str(DEFAULT_TOKEN_FILE))).expanduser()

    @property
    def token_key(self) -> Optional[str]:
        return self._get_str("tokens.key")

    @property
    def owner_id(self) -> str:
        return self._get_str("owner.id", DEFAULT_OWNER_ID)

    # --- Logging ---

    @property
    def log_level(self) -> int:
        name = str(self.get("logging.level", "WARNING")).upper()
        return getattr(logging, name, logging.WARNING)

    @property
    def log_format(self) -> str:
        return self._get_str("logging.format", DEFAULT_LOG_FORMAT)

    @property
    def log_file(self) -> Optional[str]:
        return self._get_str("logging.file")
