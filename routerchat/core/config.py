"""
Configuration manager for non-secret settings.

Stores a flat key/value mapping in ~/.routerchat/settings.yaml. Holds the
selected model id, the persisted model directory cache and an optional
gateway base URL override. Secrets live in the credential store instead.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from routerchat.utils.paths import get_routerchat_dir

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
BASE_URL_ENV_VAR = "OPENROUTER_BASE_URL"

# Settings keys
BASE_URL_KEY = "base_url"
SELECTED_MODEL_KEY = "selected_model"
MODEL_CACHE_KEY = "model_cache"


class ConfigManager:
    """
    Manages persisted settings.

    Configuration stored in ~/.routerchat/settings.yaml:
        selected_model: openai/gpt-4o
        base_url: https://openrouter.ai/api/v1
        model_cache:
          fetched_at: 1760774400.0
          models: [...]
    """

    def __init__(self, base_dir: Path | None = None):
        """
        Initialize the config manager.

        Args:
            base_dir: Directory holding settings.yaml.
                      Defaults to ~/.routerchat/
        """
        if base_dir is None:
            base_dir = get_routerchat_dir()
        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._cache: dict[str, Any] | None = None

    def _settings_path(self) -> Path:
        return self.base_dir / "settings.yaml"

    def _load(self) -> dict[str, Any]:
        if self._cache is not None:
            return self._cache

        path = self._settings_path()
        if not path.exists():
            self._cache = {}
            return self._cache

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                logger.warning("Ignoring malformed settings file %s", path)
                data = {}
            self._cache = data
        except (yaml.YAMLError, OSError) as e:
            logger.warning("Could not read settings file %s: %s", path, e)
            self._cache = {}
        return self._cache

    def _save(self) -> None:
        data = self._load()
        with open(self._settings_path(), "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def get(self, name: str, default: Any = None) -> Any:
        """Get a setting value, or ``default`` if it is not set."""
        return self._load().get(name, default)

    def set(self, name: str, value: Any) -> None:
        """Set a setting value and persist it."""
        data = self._load()
        data[name] = value
        self._save()

    def delete(self, name: str) -> bool:
        """
        Delete a setting.

        Returns:
            True if deleted, False if not found
        """
        data = self._load()
        if name in data:
            del data[name]
            self._save()
            return True
        return False

    def list_keys(self) -> list[str]:
        """List all stored setting names."""
        return list(self._load().keys())


def resolve_base_url(config: ConfigManager | None = None) -> str:
    """
    Resolve the gateway base URL.

    Environment takes precedence over stored settings, which take
    precedence over the default.
    """
    url = os.environ.get(BASE_URL_ENV_VAR)
    if not url and config is not None:
        url = config.get(BASE_URL_KEY)
    return (url or DEFAULT_BASE_URL).rstrip("/")


# Global config manager instance
_config_manager: ConfigManager | None = None


def get_config_manager() -> ConfigManager:
    """Get the global config manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager
