"""Outbound HTTP with per-attempt timeouts, jittered retries and GET coalescing.

Only transient failures are retried: transport errors (including our own
per-attempt timeout) and 5xx responses. 4xx responses come back untouched on
the first attempt. A caller cancellation, either task cancellation or a set
``cancel_event``, ends the request at once and is never retried.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from ..config import settings
from .stores import InMemoryStore, KeyValueStore

logger = logging.getLogger("verify.client")

DEFAULT_RETRIES = 2
DEFAULT_TIMEOUT_MS = 10_000
BACKOFF_BASE_MS = 500
BACKOFF_JITTER = 0.25

SleepFn = Callable[[float], Awaitable[Any]]
BackoffFn = Callable[[int], float]


class RequestCancelledError(Exception):
    """The caller signalled cancellation while the request was in flight."""


def compute_backoff(
    attempt: int,
    *,
    base_ms: int = BACKOFF_BASE_MS,
    jitter: float = BACKOFF_JITTER,
    rand: Callable[[], float] = random.random,
) -> float:
    """Return the delay in seconds before retrying after ``attempt`` (0-based)."""

    base = base_ms * (2**attempt)
    spread = base * jitter * (rand() * 2 - 1)
    return max(0.0, base + spread) / 1000


def _copy_response(response: httpx.Response) -> httpx.Response:
    # The body is already decoded, so drop the headers that describe the wire encoding.
    headers = [
        (key, value)
        for key, value in response.headers.multi_items()
        if key.lower() not in {"content-encoding", "content-length", "transfer-encoding"}
    ]
    return httpx.Response(
        status_code=response.status_code,
        headers=headers,
        content=response.content,
        request=response.request,
        history=list(response.history),
        extensions=dict(response.extensions),
    )


@dataclass
class _InflightRequest:
    task: asyncio.Future
    waiters: int = 0


class ResilientClient:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        inflight: Optional[KeyValueStore[_InflightRequest]] = None,
        sleep: SleepFn = asyncio.sleep,
        backoff: BackoffFn = compute_backoff,
        user_agent: Optional[str] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=None,
            follow_redirects=True,
            headers={"User-Agent": user_agent or settings.verify_user_agent},
        )
        self._inflight: KeyValueStore[_InflightRequest] = inflight if inflight is not None else InMemoryStore()
        self._sleep = sleep
        self._backoff = backoff

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def inflight_count(self) -> int:
        return len(self._inflight)

    async def request(
        self,
        url: str,
        *,
        method: str = "GET",
        retries: int = DEFAULT_RETRIES,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        dedupe: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
        headers: Optional[Mapping[str, str]] = None,
        follow_redirects: bool = True,
    ) -> httpx.Response:
        method = (method or "GET").upper()
        retries = max(0, int(retries))

        if method != "GET" or not dedupe:
            return await self._send_with_retries(
                url,
                method=method,
                retries=retries,
                timeout_ms=timeout_ms,
                cancel_event=cancel_event,
                headers=headers,
                follow_redirects=follow_redirects,
            )

        entry = self._inflight.get(url)
        if entry is None:
            # The shared attempt ignores any single caller's cancel_event; each waiter races its own.
            task = asyncio.ensure_future(
                self._send_with_retries(
                    url,
                    method=method,
                    retries=retries,
                    timeout_ms=timeout_ms,
                    cancel_event=None,
                    headers=headers,
                    follow_redirects=follow_redirects,
                )
            )
            entry = _InflightRequest(task=task)
            self._inflight.set(url, entry)
            task.add_done_callback(lambda _done, key=url, owner=entry: self._release(key, owner))
        else:
            logger.debug("coalescing GET onto in-flight request url=%s waiters=%s", url, entry.waiters)

        entry.waiters += 1
        try:
            response = await self._race(asyncio.shield(entry.task), cancel_event)
        finally:
            entry.waiters -= 1
            if entry.waiters <= 0 and not entry.task.done():
                # Unlink first so a newcomer starts a fresh attempt instead of joining a dying one.
                self._release(url, entry)
                entry.task.cancel()
        return _copy_response(response)

    def _release(self, key: str, owner: _InflightRequest) -> None:
        if self._inflight.get(key) is owner:
            self._inflight.delete(key)

    async def _send_with_retries(
        self,
        url: str,
        *,
        method: str,
        retries: int,
        timeout_ms: int,
        cancel_event: Optional[asyncio.Event],
        headers: Optional[Mapping[str, str]],
        follow_redirects: bool,
    ) -> httpx.Response:
        last_error: Optional[Exception] = None
        last_response: Optional[httpx.Response] = None

        for attempt in range(retries + 1):
            try:
                response = await self._attempt(
                    url,
                    method=method,
                    timeout_ms=timeout_ms,
                    cancel_event=cancel_event,
                    headers=headers,
                    follow_redirects=follow_redirects,
                )
            except httpx.UnsupportedProtocol:
                raise
            except (TimeoutError, httpx.TransportError) as exc:
                last_error = exc
                last_response = None
                logger.info(
                    "transient failure method=%s url=%s attempt=%s/%s error=%s",
                    method,
                    url,
                    attempt + 1,
                    retries + 1,
                    type(exc).__name__,
                )
            else:
                if response.status_code < 500:
                    return response
                last_error = None
                last_response = response
                logger.info(
                    "server error method=%s url=%s attempt=%s/%s status=%s",
                    method,
                    url,
                    attempt + 1,
                    retries + 1,
                    response.status_code,
                )

            if attempt < retries:
                await self._race(self._sleep(self._backoff(attempt)), cancel_event)

        if last_response is not None:
            return last_response
        assert last_error is not None
        raise last_error

    async def _attempt(
        self,
        url: str,
        *,
        method: str,
        timeout_ms: int,
        cancel_event: Optional[asyncio.Event],
        headers: Optional[Mapping[str, str]],
        follow_redirects: bool,
    ) -> httpx.Response:
        call: Awaitable[httpx.Response] = self._client.request(
            method,
            url,
            headers=dict(headers) if headers else None,
            follow_redirects=follow_redirects,
        )
        if timeout_ms and timeout_ms > 0:
            call = asyncio.wait_for(call, timeout_ms / 1000)
        return await self._race(call, cancel_event)

    @staticmethod
    async def _race(awaitable: Awaitable[Any], cancel_event: Optional[asyncio.Event]) -> Any:
        if cancel_event is None:
            return await awaitable
        if cancel_event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            elif isinstance(awaitable, asyncio.Future):
                awaitable.cancel()
            raise RequestCancelledError("request cancelled by caller")

        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _pending = await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not work.done():
                work.cancel()
        if work in done:
            return work.result()
        raise RequestCancelledError("request cancelled by caller")


_default_client: ResilientClient | None = None


def get_client() -> ResilientClient:
    global _default_client
    if _default_client is None:
        _default_client = ResilientClient()
    return _default_client


async def fetch_retry(url: str, **kwargs: Any) -> httpx.Response:
    """Module-level shortcut over the process-wide ResilientClient."""

    return await get_client().request(url, **kwargs)


# Test helper to inject a client backed by a mock transport
def _set_client_for_tests(client: ResilientClient | None) -> None:
    global _default_client
    _default_client = client


async def aclose_client() -> None:
    global _default_client
    if _default_client is not None:
        await _default_client.aclose()
        _default_client = None
