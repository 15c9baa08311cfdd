from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from pydantic import ValidationError
from temporalio import activity

from ..components.models import LivenessVerdict, VerificationCandidate
from ..config import runtime_config, settings
from ..services.job_store import DataStoreError, get_job_store
from ..services.resilient_client import get_client
from ..verification.classifier import build_generic_page_rules
from ..verification.orchestrator import VerifyOptions, verify_candidates
from ..verification.probe import UrlProber
from .exceptions import DataStoreWorkflowError, InvalidBatchWorkflowError

logger = logging.getLogger("temporal.worker.activities")


@activity.defn
async def expire_flagged_jobs(cutoff_ms: int) -> int:
    """Deactivate jobs whose removal flag is older than ``cutoff_ms``."""

    try:
        deactivated = await get_job_store().deactivate_expired_flags(int(cutoff_ms))
    except DataStoreError as exc:
        raise DataStoreWorkflowError(str(exc)) from exc
    logger.info("deactivated expired flagged jobs count=%s cutoff_ms=%s", deactivated, cutoff_ms)
    return deactivated


@activity.defn
async def fetch_verification_candidates(request: Dict[str, Any]) -> List[Dict[str, Any]]:
    try:
        candidates = await get_job_store().fetch_active_candidates(
            limit=request.get("limit"),
            offset=int(request.get("offset") or 0),
            unflagged_only=bool(request.get("unflaggedOnly", True)),
            company=request.get("company"),
        )
    except DataStoreError as exc:
        raise DataStoreWorkflowError(str(exc)) from exc
    return [c.model_dump(by_alias=True) for c in candidates]


@activity.defn
async def verify_candidate_batch(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Probe one batch concurrently and flag the dead candidates.

    Returns ``{"verdicts": [...], "deadMarked": int}`` with verdicts in the
    order the candidates were given.
    """

    try:
        candidates = [VerificationCandidate.model_validate(item) for item in payload.get("candidates") or []]
    except ValidationError as exc:
        raise InvalidBatchWorkflowError(f"invalid verification batch: {exc}") from exc
    if not candidates:
        return {"verdicts": [], "deadMarked": 0}

    options = VerifyOptions.from_runtime_config(
        batch_size=len(candidates),
        inter_batch_delay_ms=0,
        mark_dead=bool(payload.get("markDead", True)),
    )
    prober = UrlProber(
        get_client(),
        timeout_ms=options.per_request_timeout_ms,
        retries=options.retries,
        user_agent=settings.verify_user_agent,
    )
    report = await verify_candidates(
        candidates,
        options,
        probe=prober,
        mark_dead=get_job_store().mark_removal_detected,
        rules=build_generic_page_rules(runtime_config.generic_page_patterns),
    )
    return {
        "verdicts": [v.model_dump(by_alias=True, mode="json") for v in report.verdicts],
        "deadMarked": report.summary.dead_marked,
    }


@activity.defn
async def mark_jobs_verified(payload: Dict[str, Any]) -> int:
    ids = [str(job_id) for job_id in payload.get("ids") or []]
    if not ids:
        return 0
    try:
        return await get_job_store().stamp_last_verified(ids, int(payload["verifiedAt"]))
    except DataStoreError as exc:
        raise DataStoreWorkflowError(str(exc)) from exc


@activity.defn
async def record_verification_run(run: Dict[str, Any]) -> None:
    payload = {k: v for k, v in run.items() if v is not None}
    try:
        await get_job_store().record_run(payload)
    except asyncio.CancelledError:
        # Shutdown/interrupt paths shouldn't surface as activity failures
        return None
    except Exception as e:  # noqa: BLE001
        raise RuntimeError(f"Failed to record verification run: {e}") from e


def parse_verdicts(items: List[Dict[str, Any]]) -> List[LivenessVerdict]:
    return [LivenessVerdict.model_validate(item) for item in items]
