from __future__ import annotations

import json
import logging
from typing import Any, Dict

from opentelemetry import _logs as logs
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

from ..config import settings

DEFAULT_POSTHOG_ENDPOINT = "https://us.i.posthog.com/i/v1/logs"

_logger_provider: LoggerProvider | None = None
_logger: logging.Logger | None = None


def is_enabled() -> bool:
    return bool(settings.posthog_project_api_key) and not settings.posthog_disabled


def _resolve_endpoint() -> str:
    if settings.posthog_logs_endpoint:
        return settings.posthog_logs_endpoint.rstrip("/")

    region = (settings.posthog_region or "").lower()
    if region.startswith("eu"):
        return "https://eu.i.posthog.com/i/v1/logs"

    return DEFAULT_POSTHOG_ENDPOINT


def _build_otlp_exporter(endpoint: str, token: str) -> OTLPLogExporter:
    return OTLPLogExporter(endpoint=endpoint, headers={"Authorization": f"Bearer {token}"})


def _ensure_logger() -> logging.Logger:
    global _logger, _logger_provider

    if _logger:
        return _logger

    token = settings.posthog_project_api_key
    if not token:
        raise RuntimeError("POSTHOG_PROJECT_API_KEY is not configured")

    provider = LoggerProvider()
    logs.set_logger_provider(provider)
    provider.add_log_record_processor(BatchLogRecordProcessor(_build_otlp_exporter(_resolve_endpoint(), token)))

    handler = LoggingHandler(level=logging.INFO, logger_provider=provider)
    logger = logging.getLogger("verify.telemetry")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    # Avoid duplicating OTLP handlers when the function is called multiple times.
    logger.handlers = [h for h in logger.handlers if not isinstance(h, LoggingHandler)]
    logger.addHandler(handler)

    _logger_provider = provider
    _logger = logger
    return logger


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _normalize_log_level(level: Any) -> int:
    if isinstance(level, int):
        return level
    return _LEVELS.get(str(level).strip().lower(), logging.INFO)


def _attribute_value(value: Any) -> Any:
    # OTLP attributes only carry primitives; nested values ship as JSON text.
    if isinstance(value, (str, bool, int, float)):
        return value
    return json.dumps(value, default=str, sort_keys=True)


def emit_event(event: str, message: str, *, level: Any = "info", run_id: str | None = None, **data: Any) -> None:
    """Send one structured verification event to PostHog via OTLP.

    ``data`` keys become ``verify.<key>`` attributes; ``None`` values are dropped.
    """

    logger = _ensure_logger()
    if run_id:
        message = f"{message} | run_id={run_id}"

    attributes: Dict[str, Any] = {"event": event}
    if run_id:
        attributes["runId"] = run_id
    for key, value in data.items():
        if value is not None:
            attributes[f"verify.{key}"] = _attribute_value(value)

    # stacklevel points OTLP location fields at the caller, not this helper.
    logger.log(_normalize_log_level(level), message, extra=attributes, stacklevel=2)


def force_flush_posthog_logs(timeout_ms: int = 30000) -> bool:
    if _logger_provider:
        return _logger_provider.force_flush(timeout_ms)
    return True


# Test helper to reset cached providers between tests
def _reset_for_tests() -> None:
    global _logger, _logger_provider
    _logger = None
    _logger_provider = None
