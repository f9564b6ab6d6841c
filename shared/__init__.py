from .config import Config, ConfigError, get_config, reset_config

__all__ = [
    'Config',
    'ConfigError',
    'get_config',
    'reset_config'
]
