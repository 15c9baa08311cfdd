from __future__ import annotations

import os
from pathlib import Path

# No Path.resolve(): workflow sandbox imports must stay deterministic.
CONFIG_ROOT = Path(__file__).parent
ENV_VARS = ("JOB_VERIFY_ENV", "APP_ENV", "ENV")
KNOWN_ENVS = ("dev", "prod")


def get_config_env() -> str:
    for name in ENV_VARS:
        value = (os.getenv(name) or "").strip().lower()
        if value:
            return value if value in KNOWN_ENVS else "dev"
    return "dev"


def resolve_config_path(filename: str, env: str | None = None) -> Path:
    """First existing of ``<env>/<filename>`` and ``<filename>``; the env path when neither exists."""

    preferred = CONFIG_ROOT / (env or get_config_env()) / filename
    for path in (preferred, CONFIG_ROOT / filename):
        if path.exists():
            return path
    return preferred
