"""YAML-backed configuration manager for ThreadRank."""

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from threadrank.core.exceptions import ConfigError
from threadrank.core.types import COMMENT_SORT_MODES, FEED_SORT_MODES, TIME_WINDOWS
from threadrank.engine.mutation_coordinator import MIN_COOLDOWN_MS

logger = logging.getLogger("threadrank")

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

# Default configuration template
DEFAULT_CONFIG = {
    "app": {
        "locale": "en_US",
        "version": "1.0.0",
        "log_level": "INFO",
        "user_id": "",
    },
    "store": {
        "backend": "sqlite",
        "rest": {
            "url": "http://localhost:54321",
            "api_key": "",
            "timeout": 30,
            "max_retries": 3,
            "request_interval_sec": 0.0,
        },
        "sqlite": {
            "db_path": "db/threadrank.db",
        },
    },
    "voting": {
        "cooldown_ms": 500,
    },
    "feed": {
        "page_size": 25,
        "default_sort": "hot",
        "default_time_window": "day",
    },
    "comments": {
        "default_sort": "best",
    },
    "security": {
        "mask_logs": True,
    },
}


class ConfigManager:
    """Configuration manager backed by settings.yaml.

    Constructed explicitly and passed to whoever needs it:
    - Automatic settings.yaml creation if missing
    - Dot-notation key access (e.g., "feed.page_size")
    - Validation rules for critical settings
    """

    def __init__(self, config_path: Optional[Path] = None,
                 project_root: Path = PROJECT_ROOT):
        self.PROJECT_ROOT = project_root
        self.CONFIG_PATH = config_path or project_root / "config" / "settings.yaml"
        self._config: dict = {}
        self._load_or_create_config()

    def _load_or_create_config(self):
        """Load settings.yaml or create it from defaults."""
        if self.CONFIG_PATH.exists():
            try:
                with open(self.CONFIG_PATH, 'r', encoding='utf-8') as f:
                    self._config = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {self.CONFIG_PATH}")
            except yaml.YAMLError as e:
                logger.error(f"Failed to parse YAML at {self.CONFIG_PATH}: {e}")
                logger.warning("Using DEFAULT_CONFIG due to parse error")
                self._config = self._deep_copy(DEFAULT_CONFIG)
            except OSError as e:
                logger.error(f"Unexpected error loading config: {e}")
                logger.warning("Using DEFAULT_CONFIG")
                self._config = self._deep_copy(DEFAULT_CONFIG)
        else:
            logger.info(f"Config file not found at {self.CONFIG_PATH}")
            self._config = self._deep_copy(DEFAULT_CONFIG)
            self.save()
            logger.info(f"Created default configuration at {self.CONFIG_PATH}")

    def get(self, key: str, default=None) -> Any:
        """Get configuration value using dot-notation key.

        Example:
            >>> config.get("feed.page_size")
            25
        """
        value = self._config
        for part in key.split('.'):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot-notation key.

        Note: This does NOT save to disk. Use save() to persist changes.
        """
        parts = key.split('.')
        target = self._config

        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]

        target[parts[-1]] = value

    def update(self, changes: dict) -> None:
        """Batch update configuration from flat dict of dot-notation keys.

        Applies validation rules and saves to disk once after all updates.

        Validation Rules:
            - app.locale: must be "en_US" or "ko_KR"
            - voting.cooldown_ms: minimum 200
            - feed.page_size: 1-100
            - feed.default_sort / feed.default_time_window /
              comments.default_sort: must be a known mode
            - store.backend: "sqlite" or "rest"
        """
        validated_changes = {}

        for key, value in changes.items():
            validated_value = self._validate_key_value(key, value)
            if validated_value is not None:
                validated_changes[key] = validated_value

        for key, value in validated_changes.items():
            self.set(key, value)

        self.save()

    def _validate_key_value(self, key: str, value: Any) -> Any:
        """Apply validation rules to key-value pair.

        Returns:
            Validated value or None if invalid (will be ignored)
        """
        choices = {
            "app.locale": ("en_US", "ko_KR"),
            "store.backend": ("sqlite", "rest"),
            "feed.default_sort": FEED_SORT_MODES,
            "feed.default_time_window": TIME_WINDOWS,
            "comments.default_sort": COMMENT_SORT_MODES,
        }
        if key in choices:
            if value not in choices[key]:
                logger.warning(f"Invalid {key} '{value}'. Must be one of {choices[key]}. Ignoring.")
                return None
            return value

        if key == "voting.cooldown_ms":
            try:
                cooldown = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Invalid cooldown_ms '{value}'. Must be int. Ignoring.")
                return None
            if cooldown < MIN_COOLDOWN_MS:
                logger.warning(f"cooldown_ms {cooldown} < {MIN_COOLDOWN_MS}. Forcing to {MIN_COOLDOWN_MS}.")
                return MIN_COOLDOWN_MS
            return cooldown

        if key == "feed.page_size":
            try:
                size = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Invalid page_size '{value}'. Must be int. Ignoring.")
                return None
            if not (1 <= size <= 100):
                logger.warning(f"page_size {size} out of range [1, 100]. Forcing to 25.")
                return 25
            return size

        return value

    def save(self) -> None:
        """Write current configuration to settings.yaml."""
        try:
            self.CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
            with open(self.CONFIG_PATH, 'w', encoding='utf-8') as f:
                yaml.safe_dump(self._config, f, default_flow_style=False, sort_keys=False)
            logger.debug(f"Saved configuration to {self.CONFIG_PATH}")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to save configuration: {e}")
            raise ConfigError(f"Failed to save configuration: {e}")

    def get_cooldown_ms(self) -> int:
        """Vote/save/hide cooldown, never below the contractual minimum."""
        value = self.get("voting.cooldown_ms", 500)
        try:
            return max(int(value), MIN_COOLDOWN_MS)
        except (TypeError, ValueError):
            logger.warning(f"Invalid voting.cooldown_ms '{value}' in settings. Using 500.")
            return 500

    def get_db_path(self) -> Path:
        """Get absolute database path.

        Returns:
            Absolute path: PROJECT_ROOT / store.sqlite.db_path
        """
        relative_db_path = self.get("store.sqlite.db_path", "db/threadrank.db")
        return self.PROJECT_ROOT / relative_db_path

    @staticmethod
    def _deep_copy(obj):
        """Create a deep copy of nested dict/list structures."""
        if isinstance(obj, dict):
            return {k: ConfigManager._deep_copy(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [ConfigManager._deep_copy(item) for item in obj]
        else:
            return obj
