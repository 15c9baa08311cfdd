from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

import yaml

from .paths import resolve_config_path


@dataclass(frozen=True)
class RouteLimit:
    limit: int
    window_ms: int

    @property
    def retry_after_seconds(self) -> int:
        return max(1, self.window_ms // 1000)


DEFAULT_ROUTE_LIMITS: Dict[str, RouteLimit] = {
    "verify-urls": RouteLimit(limit=5, window_ms=300_000),
    "check-url": RouteLimit(limit=30, window_ms=60_000),
}


@dataclass
class RuntimeConfig:
    verify_batch_size: int
    verify_inter_batch_delay_ms: int
    verify_per_request_timeout_ms: int
    verify_retries: int
    verify_default_limit: int
    verify_max_limit: int
    removal_grace_period_days: int
    last_verified_chunk_size: int
    rate_limit_gc_interval_ms: int
    rate_limit_high_water: int
    rate_limit_hard_cap: int
    route_limits: Dict[str, RouteLimit] = field(default_factory=dict)
    # Ordered (name, regex) pairs; empty means the built-in generic page rules.
    generic_page_patterns: List[Tuple[str, str]] = field(default_factory=list)

    def route_limit(self, route: str) -> RouteLimit:
        return self.route_limits.get(route) or DEFAULT_ROUTE_LIMITS.get(route) or RouteLimit(60, 60_000)


def _load_runtime_yaml() -> Dict[str, Any]:
    path = resolve_config_path("runtime.yaml")
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError:
        return {}
    return data if isinstance(data, dict) else {}


def _coerce_int(config: Dict[str, Any], key: str, default: int) -> int:
    value = config.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


def _coerce_route_limits(config: Dict[str, Any]) -> Dict[str, RouteLimit]:
    raw = config.get("route_limits")
    limits = dict(DEFAULT_ROUTE_LIMITS)
    if not isinstance(raw, dict):
        return limits
    for route, item in raw.items():
        if not isinstance(item, dict):
            continue
        base = limits.get(str(route)) or RouteLimit(60, 60_000)
        limits[str(route)] = RouteLimit(
            limit=_coerce_int(item, "limit", base.limit),
            window_ms=_coerce_int(item, "window_ms", base.window_ms),
        )
    return limits


def _coerce_patterns(config: Dict[str, Any]) -> List[Tuple[str, str]]:
    raw = config.get("generic_page_patterns")
    if not isinstance(raw, list):
        return []
    patterns: List[Tuple[str, str]] = []
    for idx, item in enumerate(raw):
        if isinstance(item, str):
            patterns.append((f"pattern-{idx}", item))
        elif isinstance(item, dict) and isinstance(item.get("pattern"), str):
            patterns.append((str(item.get("name") or f"pattern-{idx}"), item["pattern"]))
    return patterns


def build_runtime_config(raw: Dict[str, Any]) -> RuntimeConfig:
    return RuntimeConfig(
        verify_batch_size=_coerce_int(raw, "verify_batch_size", 10),
        verify_inter_batch_delay_ms=_coerce_int(raw, "verify_inter_batch_delay_ms", 500),
        verify_per_request_timeout_ms=_coerce_int(raw, "verify_per_request_timeout_ms", 12_000),
        verify_retries=_coerce_int(raw, "verify_retries", 2),
        verify_default_limit=_coerce_int(raw, "verify_default_limit", 50),
        verify_max_limit=_coerce_int(raw, "verify_max_limit", 200),
        removal_grace_period_days=_coerce_int(raw, "removal_grace_period_days", 3),
        last_verified_chunk_size=_coerce_int(raw, "last_verified_chunk_size", 50),
        rate_limit_gc_interval_ms=_coerce_int(raw, "rate_limit_gc_interval_ms", 60_000),
        rate_limit_high_water=_coerce_int(raw, "rate_limit_high_water", 10_000),
        rate_limit_hard_cap=_coerce_int(raw, "rate_limit_hard_cap", 8_000),
        route_limits=_coerce_route_limits(raw),
        generic_page_patterns=_coerce_patterns(raw),
    )


runtime_config = build_runtime_config(_load_runtime_yaml())
