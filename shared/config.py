import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass


@dataclass
class ConfigError(Exception):
    message: str


class Config:
    def __init__(self, config_path: Optional[str] = None, test_mode: bool = False):
        self.test_mode = test_mode
        self._config = self._load_config(config_path)

    def _load_config(self, config_path: Optional[str] = None) -> Dict[str, Any]:
        if config_path is None:
            config_path = os.getenv('FEED_CONFIG_PATH')

        if config_path is None:
            # Bundled defaults are optional; constants in ranking.config cover a missing file
            config_path = Path(__file__).parent / "config.yaml"
            if not config_path.exists():
                return {}
        else:
            config_path = Path(config_path)

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file: {e}")
        except Exception as e:
            raise ConfigError(f"Error reading config file: {e}")

        return config or {}

    def get(self, path: str, default: Any = None) -> Any:
        keys = path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        if self.test_mode and isinstance(value, (int, float)):
            test_override = self._get_test_override(path)
            if test_override is not None:
                return test_override

        return value

    def _get_test_override(self, path: str) -> Any:
        test_config = self._config.get('test_mode', {})
        keys = path.split('.')
        value = test_config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return None

        return value

    def get_cache_config(self) -> Dict[str, Any]:
        return self.get('cache', {})

    def get_alert_thresholds(self) -> Dict[str, Any]:
        return self.get('monitoring.alert_thresholds', {})


_global_config: Optional[Config] = None


def get_config(config_path: Optional[str] = None, test_mode: bool = False) -> Config:
    global _global_config

    if _global_config is None or config_path is not None:
        _global_config = Config(config_path, test_mode)

    if test_mode != _global_config.test_mode:
        _global_config = Config(config_path, test_mode)

    return _global_config


def reset_config():
    global _global_config
    _global_config = None
