"""I18nManager for loading locale JSON files and rendering user-visible notices."""

import json
import logging
from pathlib import Path
from typing import Any, Dict

LOCALE_DIR = Path(__file__).resolve().parent.parent / "resources" / "locales"

logger = logging.getLogger("threadrank")


class I18nManager:
    """Loads a locale JSON file and resolves dot-notation keys.

    Supports {placeholder} substitution. Missing keys resolve to the key
    itself so a notice is never lost.
    """

    def __init__(self, locale_dir: Path = LOCALE_DIR):
        self._locale_dir = locale_dir
        self._data: Dict[str, Any] = {}
        self._locale: str = "en_US"

    def load_locale(self, locale: str) -> None:
        """Load LOCALE_DIR/{locale}.json.

        If the file is missing or malformed, logs a warning and keeps the
        current data.
        """
        locale_file = self._locale_dir / f"{locale}.json"

        if not locale_file.exists():
            logger.warning(f"Locale file not found: {locale_file}")
            return

        try:
            with open(locale_file, "r", encoding="utf-8") as f:
                self._data = json.load(f)
                self._locale = locale
            logger.info(f"Loaded locale: {locale}")
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse locale file {locale_file}: {e}")
        except OSError as e:
            logger.warning(f"Failed to load locale file {locale_file}: {e}")

    def get(self, key: str, **kwargs) -> str:
        """Get translated string by dot-notation key. Never raises.

        Examples:
            get("errors.vote_failed") -> "Vote failed. Please try again."
            get("errors.depth_exceeded", max_depth=5)
        """
        template = self._resolve(key)

        if not kwargs:
            return template

        try:
            return template.format_map(kwargs)
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to format i18n string for key '{key}': {e}")
            return template

    @property
    def locale(self) -> str:
        return self._locale

    def _resolve(self, key: str) -> str:
        """Walk nested dict by dot-separated key; fall back to the key."""
        node = self._data

        for part in key.split("."):
            if isinstance(node, dict) and part in node:
                node = node[part]
            else:
                return key

        return node if isinstance(node, str) else key
