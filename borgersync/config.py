"""
Configuration management for borgersync.
"""
import copy
import os
import json
import logging
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional
from dotenv import load_dotenv

from borgersync.fetchers.borgerdk import Endpoint

logger = logging.getLogger(__name__)

# Load environment variables from .env file
load_dotenv()

ENV_PREFIX = "BORGERSYNC_"
# Separates nested keys in environment variable names
ENV_SEPARATOR = "__"

# Default configuration
DEFAULT_CONFIG = {
    "endpoints": [
        {
            "domain": "www.borger.dk",
            "url": "https://www.borger.dk/_vti_bin/borger/ArticleExport.svc"
        },
        {
            "domain": "lifeindenmark.borger.dk",
            "url": "https://lifeindenmark.borger.dk/_vti_bin/borger/ArticleExport.svc"
        }
    ],
    "cache": {
        "directory": "cache/borgerdk"
    },
    "state": {
        "path": "cache/borgersync_state.json",
        "skip_warning_threshold": 3
    },
    "targets": {
        "path": "targets.json"
    },
    "rate_limiting": {
        "requests_per_second": 1,
        "max_concurrent": 1,
        "timeout_seconds": 30,
        "catalog_max_tries": 3
    },
    "logging": {
        "level": "INFO",
        "file": None
    }
}


class Config:
    """
    Configuration manager for borgersync.
    """
    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the Config.

        Args:
            config_path: Path to the configuration file
        """
        self.config_path = config_path
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """
        Load configuration from file or use defaults.

        Returns:
            Configuration dictionary
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path:
            path = Path(self.config_path)
            if path.exists():
                try:
                    with open(path, 'r', encoding='utf-8') as f:
                        if path.suffix.lower() in ['.yaml', '.yml']:
                            user_config = yaml.safe_load(f)
                        elif path.suffix.lower() == '.json':
                            user_config = json.load(f)
                        else:
                            raise ValueError(f"Unsupported config file format: {path.suffix}")
                except (OSError, ValueError, yaml.YAMLError) as e:
                    logger.error(f"Error loading config from {self.config_path}: {e}")
                    logger.warning("Using default configuration")
                else:
                    # Update config with user settings
                    self._update_dict(config, user_config or {})
            else:
                logger.warning(f"Config file {self.config_path} not found, using defaults")

        # Override with environment variables
        self._override_from_env(config)

        return config

    def _update_dict(self, target: Dict, source: Dict) -> None:
        """
        Recursively update a dictionary.

        Args:
            target: Target dictionary to update
            source: Source dictionary with new values
        """
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._update_dict(target[key], value)
            else:
                target[key] = value

    def _override_from_env(self, config: Dict, prefix: str = ENV_PREFIX) -> None:
        """
        Override configuration with environment variables, e.g.
        ``BORGERSYNC_RATE_LIMITING__TIMEOUT_SECONDS=60``.

        Args:
            config: Configuration dictionary to update
            prefix: Prefix for environment variables
        """
        for key, value in os.environ.items():
            if not key.startswith(prefix) or key == prefix + "CONFIG_PATH":
                continue

            parts = key[len(prefix):].lower().split(ENV_SEPARATOR)

            # Navigate to the right place in the config
            current = config
            for part in parts[:-1]:
                if not isinstance(current.get(part), dict):
                    current[part] = {}
                current = current[part]

            # Set the value
            try:
                # Try to parse as JSON
                current[parts[-1]] = json.loads(value)
            except json.JSONDecodeError:
                # If not valid JSON, use as string
                current[parts[-1]] = value

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Dot-separated key path (e.g., 'cache.directory')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        parts = key.split('.')
        current = self.config

        for part in parts:
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]

        return current

    def endpoints(self) -> List[Endpoint]:
        """
        The configured ArticleExport endpoints.

        Raises:
            ValueError: If an endpoint lacks a domain or URL
        """
        endpoints = []
        for item in self.get('endpoints') or []:
            if not isinstance(item, dict) or not item.get('domain') or not item.get('url'):
                raise ValueError(f"Invalid endpoint configuration: {item!r}")
            endpoints.append(Endpoint(domain=item['domain'], url=item['url']))
        return endpoints


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from ``config_path`` or ``$BORGERSYNC_CONFIG_PATH``.
    """
    return Config(config_path or os.getenv(ENV_PREFIX + 'CONFIG_PATH'))
