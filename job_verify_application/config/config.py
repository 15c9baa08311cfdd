from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)


def _env_flag(name: str, default: str = "false") -> bool:
    value = os.getenv(name, default)
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class Settings:
    temporal_address: str = os.getenv("TEMPORAL_ADDRESS", "localhost:7233")
    temporal_namespace: str = os.getenv("TEMPORAL_NAMESPACE", "default")
    task_queue: str = os.getenv("TEMPORAL_TASK_QUEUE", "verify-task-queue")

    # Convex deployment URL for the ConvexClient (e.g., https://your-app.convex.cloud)
    convex_url: str | None = os.getenv("CONVEX_URL")

    # Legacy HTTP router base (e.g., https://your-app.convex.site)
    convex_http_url: str | None = os.getenv("CONVEX_HTTP_URL")

    # Many corporate career sites reject non-browser clients outright.
    verify_user_agent: str = os.getenv("VERIFY_USER_AGENT") or DEFAULT_USER_AGENT

    # Time budget for one /api/admin/verify-urls run; work past it is reported as skipped.
    verify_max_duration_seconds: int = _env_int("VERIFY_MAX_DURATION_SECONDS", 60)

    rate_limit_disabled: bool = _env_flag("RATE_LIMIT_DISABLED", "false")
    log_dir: str = os.getenv("JOB_VERIFY_LOG_DIR", "logs")

    # PostHog logging (OTLP) configuration
    posthog_project_api_key: str | None = os.getenv("POSTHOG_PROJECT_API_KEY")
    posthog_logs_endpoint: str | None = os.getenv("POSTHOG_LOGS_ENDPOINT")
    posthog_region: str | None = os.getenv("POSTHOG_REGION")
    posthog_disabled: bool = _env_flag("POSTHOG_DISABLED", "false") or _env_flag(
        "POSTHOG_DISABLE", "false"
    )


settings = Settings()
