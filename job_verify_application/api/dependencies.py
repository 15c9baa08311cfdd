from __future__ import annotations

import logging
from typing import Callable

from fastapi import Request

from ..config import runtime_config, settings
from ..services.job_store import JobStore, get_job_store
from ..services.rate_limiter import rate_limit
from ..services.resilient_client import get_client
from ..verification.orchestrator import VerifyOptions
from ..verification.probe import ProbeFn, UrlProber

logger = logging.getLogger("verify.api")

ProberFactory = Callable[[VerifyOptions], ProbeFn]


class RateLimitExceeded(Exception):
    def __init__(self, route: str, retry_after_seconds: int) -> None:
        super().__init__(f"rate limit exceeded for {route}")
        self.route = route
        self.retry_after_seconds = retry_after_seconds


def get_client_identity(request: Request) -> str:
    """Resolve the caller: first X-Forwarded-For hop, then X-Real-IP, then the socket peer."""

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def require_rate_limit(route: str) -> Callable[[Request], None]:
    """Build a dependency that admits the caller against ``route``'s configured limit."""

    def _dependency(request: Request) -> None:
        if settings.rate_limit_disabled:
            return
        route_limit = runtime_config.route_limit(route)
        client = get_client_identity(request)
        result = rate_limit(f"{route}:{client}", route_limit.limit, route_limit.window_ms)
        if result.limited:
            logger.warning("rate limited route=%s client=%s", route, client)
            raise RateLimitExceeded(route, route_limit.retry_after_seconds)

    return _dependency


def get_store() -> JobStore:
    return get_job_store()


def get_prober_factory() -> ProberFactory:
    def _build(options: VerifyOptions) -> ProbeFn:
        return UrlProber(
            get_client(),
            timeout_ms=options.per_request_timeout_ms,
            retries=options.retries,
            user_agent=settings.verify_user_agent,
        )

    return _build
