from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional

import httpx

from ..services.resilient_client import RequestCancelledError, ResilientClient
from .classifier import ProbeOutcome

logger = logging.getLogger("verify.probe")

BROWSER_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
BROWSER_ACCEPT_LANGUAGE = "en-US,en;q=0.9"
# Servers that refuse HEAD outright; retry the same URL with GET.
HEAD_REJECTED_STATUS_CODES = frozenset({405, 501})

ProbeFn = Callable[[str], Awaitable[ProbeOutcome]]


def browser_headers(user_agent: Optional[str] = None) -> Dict[str, str]:
    headers = {"Accept": BROWSER_ACCEPT, "Accept-Language": BROWSER_ACCEPT_LANGUAGE}
    if user_agent:
        headers["User-Agent"] = user_agent
    return headers


def _outcome(url: str, response: httpx.Response) -> ProbeOutcome:
    return ProbeOutcome(requested_url=url, status_code=response.status_code, final_url=str(response.url))


class UrlProber:
    """HEAD-then-GET liveness probe over a ResilientClient."""

    def __init__(
        self,
        client: ResilientClient,
        *,
        timeout_ms: int = 12_000,
        retries: int = 2,
        user_agent: Optional[str] = None,
    ) -> None:
        self.client = client
        self.timeout_ms = timeout_ms
        self.retries = retries
        self.headers = browser_headers(user_agent)

    async def __call__(self, url: str) -> ProbeOutcome:
        return await self.probe(url)

    async def probe(self, url: str) -> ProbeOutcome:
        # HEAD transport failures already spent the retry budget; the GET fallback gets one attempt.
        get_retries = self.retries
        try:
            head = await self.client.request(
                url,
                method="HEAD",
                retries=self.retries,
                timeout_ms=self.timeout_ms,
                headers=self.headers,
            )
        except (TimeoutError, httpx.TimeoutException, RequestCancelledError) as exc:
            return ProbeOutcome(requested_url=url, error=exc)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            logger.debug("HEAD failed url=%s error=%s; falling back to GET", url, exc)
            get_retries = 0
        else:
            if head.status_code not in HEAD_REJECTED_STATUS_CODES:
                return _outcome(url, head)
            logger.debug("HEAD rejected url=%s status=%s; falling back to GET", url, head.status_code)

        try:
            response = await self.client.request(
                url,
                method="GET",
                retries=get_retries,
                timeout_ms=self.timeout_ms,
                headers=self.headers,
            )
        except (httpx.HTTPError, httpx.InvalidURL, TimeoutError, RequestCancelledError, ValueError) as exc:
            return ProbeOutcome(requested_url=url, error=exc)
        return _outcome(url, response)
