from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from convex import ConvexClient

from ..components.models import VerificationCandidate, load_candidates
from ..config import settings

logger = logging.getLogger("verify.job_store")

LIST_CANDIDATES_QUERY = "jobs:listVerificationCandidates"
GET_CANDIDATE_QUERY = "jobs:getVerificationCandidate"
MARK_REMOVAL_DETECTED_MUTATION = "jobs:markRemovalDetected"
DEACTIVATE_EXPIRED_MUTATION = "jobs:deactivateExpiredRemovals"
MARK_VERIFIED_MUTATION = "jobs:markLastVerified"
RECORD_RUN_MUTATION = "verification:recordRun"


class DataStoreError(RuntimeError):
    """Raised when the job data store cannot be read or written."""


class JobStore(ABC):
    """Access to the jobs the verifier reads candidates from and flags."""

    @abstractmethod
    async def fetch_active_candidates(
        self,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        unflagged_only: bool = False,
        company: Optional[str] = None,
    ) -> List[VerificationCandidate]: ...

    @abstractmethod
    async def get_candidate(self, job_id: str) -> Optional[VerificationCandidate]: ...

    @abstractmethod
    async def mark_removal_detected(self, job_id: str, detected_at_ms: int) -> None: ...

    @abstractmethod
    async def deactivate_expired_flags(self, cutoff_ms: int) -> int: ...

    @abstractmethod
    async def stamp_last_verified(self, job_ids: Sequence[str], verified_at_ms: int) -> int: ...

    async def record_run(self, summary: Dict[str, Any]) -> None:
        """Persist a run summary; stores without run history ignore it."""

        return None


def convex_deployment_url() -> str:
    """CONVEX_URL, else CONVEX_HTTP_URL with its .convex.site host mapped to .convex.cloud."""

    if settings.convex_url:
        return settings.convex_url
    http_url = (settings.convex_http_url or "").rstrip("/")
    if http_url:
        return http_url.replace(".convex.site", ".convex.cloud")
    raise RuntimeError("CONVEX_URL env var is required for the job store")


class ConvexJobStore(JobStore):
    """Jobs table in Convex; the sync client runs on a worker thread per call."""

    def __init__(self, client: Optional[ConvexClient] = None) -> None:
        self._client = client

    @property
    def client(self) -> ConvexClient:
        if self._client is None:
            self._client = ConvexClient(convex_deployment_url())
        return self._client

    async def _call(self, kind: str, name: str, args: Dict[str, Any]) -> Any:
        try:
            return await asyncio.to_thread(getattr(self.client, kind), name, args)
        except Exception as exc:  # noqa: BLE001
            raise DataStoreError(f"{name} failed: {exc}") from exc

    async def _query(self, name: str, args: Dict[str, Any]) -> Any:
        return await self._call("query", name, args)

    async def _mutation(self, name: str, args: Dict[str, Any]) -> Any:
        return await self._call("mutation", name, args)

    async def fetch_active_candidates(
        self,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        unflagged_only: bool = False,
        company: Optional[str] = None,
    ) -> List[VerificationCandidate]:
        args: Dict[str, Any] = {"offset": max(0, int(offset)), "unflaggedOnly": unflagged_only}
        if company:
            args["company"] = company
        if limit is not None:
            args["limit"] = max(0, int(limit))
        rows = await self._query(LIST_CANDIDATES_QUERY, args)
        # Some deployments wrap rows in a paginated payload.
        if isinstance(rows, dict):
            rows = rows.get("page") or rows.get("jobs") or []
        candidates = load_candidates(rows)
        logger.debug("fetched candidates count=%s limit=%s offset=%s", len(candidates), limit, offset)
        return candidates

    async def get_candidate(self, job_id: str) -> Optional[VerificationCandidate]:
        row = await self._query(GET_CANDIDATE_QUERY, {"id": job_id})
        if not row:
            return None
        found = load_candidates([row])
        return found[0] if found else None

    async def mark_removal_detected(self, job_id: str, detected_at_ms: int) -> None:
        await self._mutation(
            MARK_REMOVAL_DETECTED_MUTATION,
            {"id": job_id, "removalDetectedAt": detected_at_ms, "updatedAt": detected_at_ms},
        )

    async def deactivate_expired_flags(self, cutoff_ms: int) -> int:
        result = await self._mutation(DEACTIVATE_EXPIRED_MUTATION, {"cutoff": cutoff_ms})
        return _count_from(result)

    async def stamp_last_verified(self, job_ids: Sequence[str], verified_at_ms: int) -> int:
        if not job_ids:
            return 0
        result = await self._mutation(
            MARK_VERIFIED_MUTATION, {"ids": list(job_ids), "lastVerifiedAt": verified_at_ms}
        )
        return _count_from(result, default=len(job_ids))

    async def record_run(self, summary: Dict[str, Any]) -> None:
        await self._mutation(RECORD_RUN_MUTATION, summary)


def _count_from(result: Any, *, default: int = 0) -> int:
    if isinstance(result, bool):
        return default
    if isinstance(result, int):
        return result
    if isinstance(result, dict):
        for key in ("count", "updated", "deactivated"):
            value = result.get(key)
            if isinstance(value, int):
                return value
    return default


_store: Optional[JobStore] = None


def get_job_store() -> JobStore:
    global _store
    if _store is None:
        _store = ConvexJobStore()
    return _store


# Test helper to inject a fake store
def _set_job_store_for_tests(store: JobStore | None) -> None:
    global _store
    _store = store
