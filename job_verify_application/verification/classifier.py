from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import httpx

from ..components.models import LivenessStatus, LivenessVerdict
from ..services.resilient_client import RequestCancelledError

# Destination paths that mean "the posting is gone and we were bounced to a catch-all page".
# Evaluated top to bottom against the final path only.
GENERIC_ROOT_PATTERN = r"^/?$"
GENERIC_CAREERS_PATTERN = r"/careers?/?$"
GENERIC_SEARCH_JOBS_PATTERN = r"/search-jobs/?$"
GENERIC_JOB_SEARCH_PATTERN = r"/job-search/?$"
GENERIC_404_PATTERN = r"/404/?$"
GENERIC_NOT_FOUND_PATTERN = r"/not-found/?$"

DEFAULT_GENERIC_PAGE_PATTERNS: Tuple[Tuple[str, str], ...] = (
    ("root", GENERIC_ROOT_PATTERN),
    ("careers", GENERIC_CAREERS_PATTERN),
    ("search-jobs", GENERIC_SEARCH_JOBS_PATTERN),
    ("job-search", GENERIC_JOB_SEARCH_PATTERN),
    ("404", GENERIC_404_PATTERN),
    ("not-found", GENERIC_NOT_FOUND_PATTERN),
)

TIMEOUT_EXCEPTIONS = (TimeoutError, httpx.TimeoutException, RequestCancelledError, asyncio.CancelledError)
DEAD_STATUS_CODES = frozenset({404, 410})


@dataclass(frozen=True)
class GenericPageRule:
    name: str
    regex: re.Pattern[str]

    @classmethod
    def from_pattern(cls, name: str, pattern: str) -> "GenericPageRule":
        return cls(name=name, regex=re.compile(pattern, re.IGNORECASE))

    def matches(self, path: str) -> bool:
        return self.regex.search(path) is not None


def build_generic_page_rules(patterns: Optional[Iterable[Tuple[str, str]]] = None) -> List[GenericPageRule]:
    pairs = list(patterns) if patterns else list(DEFAULT_GENERIC_PAGE_PATTERNS)
    return [GenericPageRule.from_pattern(name, pattern) for name, pattern in pairs]


DEFAULT_GENERIC_PAGE_RULES: List[GenericPageRule] = build_generic_page_rules()


@dataclass(frozen=True)
class ProbeOutcome:
    """Raw result of probing one URL: either a response summary or the exception raised."""

    requested_url: str
    status_code: Optional[int] = None
    final_url: Optional[str] = None
    error: Optional[BaseException] = None


def url_path(url: str) -> str:
    path = urlparse(url).path or "/"
    return path


def _comparable_path(url: str) -> str:
    path = url_path(url)
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def match_generic_page(path: str, rules: Sequence[GenericPageRule] = DEFAULT_GENERIC_PAGE_RULES) -> Optional[str]:
    """Return the name of the first generic-page rule matching ``path``."""

    for rule in rules:
        if rule.matches(path):
            return rule.name
    return None


def classify(
    candidate_id: str,
    outcome: ProbeOutcome,
    rules: Sequence[GenericPageRule] = DEFAULT_GENERIC_PAGE_RULES,
) -> LivenessVerdict:
    """Map one probe outcome onto a liveness verdict. Pure; never raises for bad URLs."""

    if outcome.error is not None:
        if isinstance(outcome.error, TIMEOUT_EXCEPTIONS):
            return LivenessVerdict(
                candidateId=candidate_id,
                status=LivenessStatus.TIMEOUT,
                errorDetail=str(outcome.error) or "request timed out",
            )
        return LivenessVerdict(
            candidateId=candidate_id,
            status=LivenessStatus.FETCH_ERROR,
            errorDetail=str(outcome.error) or type(outcome.error).__name__,
        )

    status_code = outcome.status_code
    final_url = outcome.final_url or None

    if status_code in DEAD_STATUS_CODES:
        return LivenessVerdict(
            candidateId=candidate_id,
            status=LivenessStatus.DEAD,
            httpStatusCode=status_code,
            finalUrl=final_url,
        )

    if status_code is not None and 200 <= status_code < 400:
        status = LivenessStatus.ALIVE
        if final_url:
            try:
                same_path = _comparable_path(outcome.requested_url) == _comparable_path(final_url)
                final_path = url_path(final_url)
            except ValueError:
                same_path, final_path = True, ""
            if not same_path:
                generic = match_generic_page(final_path, rules)
                status = LivenessStatus.DEAD_REDIRECT if generic else LivenessStatus.REDIRECT
        return LivenessVerdict(
            candidateId=candidate_id,
            status=status,
            httpStatusCode=status_code,
            finalUrl=final_url,
        )

    return LivenessVerdict(
        candidateId=candidate_id,
        status=LivenessStatus.ERROR,
        httpStatusCode=status_code,
        finalUrl=final_url,
        errorDetail=f"HTTP {status_code}",
    )
