from .config import Settings, settings
from .paths import get_config_env, resolve_config_path
from .runtime_config import RuntimeConfig, runtime_config

__all__ = [
    "Settings",
    "settings",
    "RuntimeConfig",
    "runtime_config",
    "get_config_env",
    "resolve_config_path",
]
